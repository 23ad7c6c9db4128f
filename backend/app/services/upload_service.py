"""
Upload Lifecycle Tracker.

    Processing ──► Completed   (counts attached)
        │
        └──────► Failed      (error message kept, counts stay 0)

Terminal states are final; a retry is a new upload.  Callers normally run
these writes in their own short transactions (uow=None) so the status
survives a rolled-back ingestion.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, unit_of_work
from app.models.ingestion_schema import UploadRecord
from app.models.orm_models import Project, Upload
from app.services.errors import (
    DatabaseError,
    ProjectNotFoundError,
    UploadNotFoundError,
    UploadStateError,
    ValidationError,
)
from app.services.pipeline_config import (
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
    UPLOAD_PROCESSING,
    UPLOAD_TERMINAL_STATES,
)

logger = logging.getLogger("lca-ingestion")


class UploadTracker:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    def _uow(self, uow: Optional[UnitOfWork], name: str):
        return unit_of_work(uow, name=name, session_factory=self.session_factory)

    async def create_upload(self, project_id: str, filename: str, uow: Optional[UnitOfWork] = None) -> UploadRecord:
        filename = (filename or "").strip()
        if not filename:
            raise ValidationError("Upload filename is required", field="filename")
        async with self._uow(uow, "create_upload") as work:
            session = work.session
            if await session.get(Project, project_id) is None:
                raise ProjectNotFoundError(project_id)
            upload = Upload(project_id=project_id, filename=filename, status=UPLOAD_PROCESSING)
            session.add(upload)
            try:
                await session.flush()
                await session.refresh(upload)
            except SQLAlchemyError as exc:
                raise DatabaseError("upload create", str(exc)) from exc
            record = UploadRecord.from_orm_upload(upload)
        logger.info("Upload %s created (%s)", record.id, filename, extra={"project_id": project_id, "upload_id": record.id})
        return record

    async def _load(self, session, upload_id: str) -> Upload:
        upload = await session.scalar(
            select(Upload).where(Upload.id == upload_id).execution_options(populate_existing=True)
        )
        if upload is None:
            raise UploadNotFoundError(upload_id)
        return upload

    async def get_upload(self, upload_id: str, uow: Optional[UnitOfWork] = None) -> UploadRecord:
        async with self._uow(uow, "get_upload") as work:
            return UploadRecord.from_orm_upload(await self._load(work.session, upload_id))

    async def _transition(self, upload_id: str, status: str, uow: Optional[UnitOfWork], **fields) -> UploadRecord:
        async with self._uow(uow, f"upload_{status.lower()}") as work:
            session = work.session
            upload = await self._load(session, upload_id)
            if upload.status in UPLOAD_TERMINAL_STATES:
                raise UploadStateError(f"Upload {upload_id} is already {upload.status}; cannot mark {status}")
            upload.status = status
            for field, value in fields.items():
                setattr(upload, field, value)
            try:
                await session.flush()
                await session.refresh(upload)
            except SQLAlchemyError as exc:
                raise DatabaseError(f"upload {status.lower()} update", str(exc)) from exc
            return UploadRecord.from_orm_upload(upload)

    async def mark_completed(
        self,
        upload_id: str,
        element_count: int,
        material_count: int,
        uow: Optional[UnitOfWork] = None,
    ) -> UploadRecord:
        record = await self._transition(
            upload_id, UPLOAD_COMPLETED, uow,
            element_count=element_count, material_count=material_count,
        )
        logger.info(
            "Upload %s completed: %d elements, %d materials", upload_id, element_count, material_count,
            extra={"upload_id": upload_id},
        )
        return record

    async def mark_failed(self, upload_id: str, error: str, uow: Optional[UnitOfWork] = None) -> UploadRecord:
        record = await self._transition(
            upload_id, UPLOAD_FAILED, uow,
            element_count=0, material_count=0, error_message=error,
        )
        logger.error("Upload %s failed: %s", upload_id, error, extra={"upload_id": upload_id})
        return record
