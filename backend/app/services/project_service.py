"""Project Service: minimal create/read for the projects that own uploads, materials and elements."""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, unit_of_work
from app.models.orm_models import Project
from app.services.errors import DatabaseError, ProjectNotFoundError, ValidationError

logger = logging.getLogger("lca-ingestion")


class ProjectService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def create_project(
        self, name: str, description: Optional[str] = None, uow: Optional[UnitOfWork] = None
    ) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required", field="name")
        async with unit_of_work(uow, name="create_project", session_factory=self.session_factory) as work:
            project = Project(name=name, description=description)
            work.session.add(project)
            try:
                await work.session.flush()
                await work.session.refresh(project)
            except SQLAlchemyError as exc:
                raise DatabaseError("project create", str(exc)) from exc
        logger.info("Project %s created", project.id, extra={"project_id": project.id})
        return project

    async def get_project(self, project_id: str, uow: Optional[UnitOfWork] = None) -> Project:
        async with unit_of_work(uow, name="get_project", session_factory=self.session_factory) as work:
            project = await work.session.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project
