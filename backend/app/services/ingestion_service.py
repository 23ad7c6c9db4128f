"""
Ingestion Service: the end-to-end pipeline for one parsed building model.

    validate ─► reconcile materials ─► write elements ─► auto-match ─►
    refresh layer indicators ─► refresh project emissions

process_ingestion runs every step inside one unit of work: either all writes
are committed or none are.  ingest_upload adds the upload lifecycle around it;
the upload row is created and finalised in separate transactions so a failed
or cancelled ingestion is still visible as Failed after the rollback.
"""
import asyncio
import logging
import time
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.unit_of_work import UnitOfWork, unit_of_work
from app.models.ingestion_schema import ElementRecord, IngestionResult, MatchResult, UploadRecord
from app.models.orm_models import Upload
from app.services.catalog_client import CatalogClient
from app.services.element_writer import ElementWriter
from app.services.errors import (
    AppError,
    ProjectNotFoundError,
    UploadNotFoundError,
    UploadStateError,
    ValidationError,
)
from app.services.indicator_engine import IndicatorEngine
from app.services.match_engine import MatchEngine
from app.services.material_service import MaterialService
from app.services.perf_monitor import tracker
from app.services.pipeline_config import UPLOAD_CANCELLED_ERROR, UPLOAD_PROCESSING
from app.services.project_service import ProjectService
from app.services.upload_service import UploadTracker

logger = logging.getLogger("lca-ingestion")

ElementInput = Union[ElementRecord, dict[str, Any]]


def validate_elements(elements: Iterable[ElementInput]) -> list[ElementRecord]:
    """Parse raw producer records; any malformed record rejects the whole list."""
    records = []
    for index, raw in enumerate(elements):
        if isinstance(raw, ElementRecord):
            records.append(raw)
            continue
        try:
            records.append(ElementRecord.model_validate(raw))
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise ValidationError(
                f"Element #{index}: {first['msg']} ({exc.error_count()} error(s))",
                field=location or None,
            ) from exc
    return records


def collect_material_names(records: Iterable[ElementRecord]) -> set[str]:
    names: set[str] = set()
    for record in records:
        names.update(record.material_names())
    return names


class IngestionService:
    def __init__(
        self,
        catalog_client: Optional[CatalogClient] = None,
        session_factory: Optional[async_sessionmaker] = None,
        match_engine: Optional[MatchEngine] = None,
    ):
        self.session_factory = session_factory
        self.materials = MaterialService(session_factory)
        self.writer = ElementWriter(session_factory)
        self.indicators = IndicatorEngine(session_factory)
        self.uploads = UploadTracker(session_factory)
        self.projects = ProjectService(session_factory)
        self.match_engine = match_engine or MatchEngine(
            catalog_client or CatalogClient(),
            material_service=self.materials,
            session_factory=session_factory,
        )

    async def _check_scope(self, work: UnitOfWork, project_id: str, upload_id: str) -> None:
        await self.projects.get_project(project_id, uow=work)
        upload = await work.session.get(Upload, upload_id)
        if upload is None or upload.project_id != project_id:
            raise UploadNotFoundError(upload_id)
        if upload.status != UPLOAD_PROCESSING:
            raise UploadStateError(f"Upload {upload_id} is {upload.status}, expected {UPLOAD_PROCESSING}")

    async def process_ingestion(
        self,
        project_id: str,
        upload_id: str,
        elements: Iterable[ElementInput],
        uow: Optional[UnitOfWork] = None,
    ) -> IngestionResult:
        records = validate_elements(elements)
        log_ctx = {"project_id": project_id, "upload_id": upload_id}
        start = time.perf_counter()

        async with unit_of_work(uow, name="process_ingestion", session_factory=self.session_factory) as work:
            await self._check_scope(work, project_id, upload_id)

            async with tracker.step("reconcile_materials"):
                materials = await self.materials.reconcile_materials(
                    project_id, upload_id, collect_material_names(records), uow=work
                )
            async with tracker.step("write_elements"):
                element_count = await self.writer.write_elements(
                    project_id, upload_id, records, materials, uow=work
                )
            async with tracker.step("apply_automatic_matches"):
                matches = await self.match_engine.apply_automatic_matches(
                    project_id, [m.id for m in materials.values()], uow=work
                )
            async with tracker.step("refresh_indicators"):
                await self.indicators.refresh_layer_indicators(project_id, uow=work)
                await self.indicators.refresh_project_emissions(project_id, uow=work)

        result = IngestionResult(
            element_count=element_count,
            material_count=len(materials),
            matched_count=matches.matched_count,
        )
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        tracker.record_ingestion_complete(duration_ms)
        logger.info(
            "Ingestion done: %d elements, %d materials, %d matched",
            result.element_count, result.material_count, result.matched_count,
            extra={**log_ctx, "duration_ms": duration_ms},
        )
        return result

    async def apply_automatic_matches(
        self,
        project_id: str,
        material_ids: list[str],
        uow: Optional[UnitOfWork] = None,
    ) -> MatchResult:
        """Standalone match run; refreshes indicators so totals reflect new matches."""
        async with unit_of_work(uow, name="apply_automatic_matches", session_factory=self.session_factory) as work:
            await self.projects.get_project(project_id, uow=work)
            result = await self.match_engine.apply_automatic_matches(project_id, material_ids, uow=work)
            if result.matched_count:
                await self.indicators.refresh_layer_indicators(project_id, uow=work)
                await self.indicators.refresh_project_emissions(project_id, uow=work)
        return result

    async def ingest_upload(
        self,
        project_id: str,
        filename: str,
        elements: Iterable[ElementInput],
    ) -> UploadRecord:
        """Create an upload, run the pipeline, and record the terminal status."""
        upload = await self.uploads.create_upload(project_id, filename)
        return await self.run_upload(project_id, upload.id, elements)

    async def run_upload(self, project_id: str, upload_id: str, elements: Iterable[ElementInput]) -> UploadRecord:
        try:
            result = await self.process_ingestion(project_id, upload_id, elements)
        except (ProjectNotFoundError, UploadNotFoundError, UploadStateError):
            # not this upload's run to fail
            raise
        except asyncio.CancelledError:
            tracker.record_ingestion_failed()
            # shielded so a second cancel cannot leave the upload in Processing
            await asyncio.shield(self.uploads.mark_failed(upload_id, UPLOAD_CANCELLED_ERROR))
            raise
        except Exception as exc:
            tracker.record_ingestion_failed()
            message = exc.message if isinstance(exc, AppError) else f"{type(exc).__name__}: {exc}"
            await self.uploads.mark_failed(upload_id, message)
            raise
        return await self.uploads.mark_completed(upload_id, result.element_count, result.material_count)
