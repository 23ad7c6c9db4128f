"""Ingestion API: projects, model uploads, material matching and emissions."""
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.api.deps import (
    get_indicator_engine,
    get_ingestion_service,
    get_material_service,
    get_project_service,
    get_upload_tracker,
)
from app.models.ingestion_schema import (
    EmissionsSummary,
    MaterialRecord,
    MaterialUpdate,
    MatchResult,
    UploadRecord,
)
from app.services.indicator_engine import IndicatorEngine
from app.services.ingestion_service import IngestionService
from app.services.material_service import MaterialService
from app.services.project_service import ProjectService
from app.services.upload_service import UploadTracker

logger = logging.getLogger("lca-api")

router = APIRouter(prefix="/api", tags=["Model Ingestion"])


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class UploadRequest(BaseModel):
    filename: str = Field(..., min_length=1)
    # Raw producer records; validated by the pipeline so errors carry element context
    elements: list[dict[str, Any]] = Field(default_factory=list)


class AutoMatchRequest(BaseModel):
    material_ids: list[uuid.UUID] = Field(..., min_length=1)


# ─── Projects ─────────────────────────────────────────────────────────────────

@router.post("/projects", status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    projects: ProjectService = Depends(get_project_service),
):
    project = await projects.create_project(body.name, body.description)
    return {"id": project.id, "name": project.name, "description": project.description}


@router.get("/projects/{project_id}/emissions", response_model=EmissionsSummary)
async def project_emissions(
    project_id: uuid.UUID,
    indicators: IndicatorEngine = Depends(get_indicator_engine),
):
    """Totals recomputed from current elements and matches."""
    return await indicators.project_indicators(str(project_id))


@router.get("/projects/{project_id}/elements/{element_id}/emissions", response_model=EmissionsSummary)
async def element_emissions(
    project_id: uuid.UUID,
    element_id: uuid.UUID,
    indicators: IndicatorEngine = Depends(get_indicator_engine),
):
    return await indicators.element_indicators(str(project_id), str(element_id))


# ─── Uploads ──────────────────────────────────────────────────────────────────

@router.post(
    "/projects/{project_id}/uploads",
    response_model=UploadRecord,
    status_code=status.HTTP_201_CREATED,
)
async def create_upload(
    project_id: uuid.UUID,
    body: UploadRequest,
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    """
    Ingest a parsed building model.

    Runs synchronously: the response is the Completed upload record.  On
    failure the upload is left Failed and the error is returned.
    """
    return await ingestion.ingest_upload(str(project_id), body.filename, body.elements)


@router.get("/uploads/{upload_id}", response_model=UploadRecord)
async def get_upload(
    upload_id: uuid.UUID,
    uploads: UploadTracker = Depends(get_upload_tracker),
):
    return await uploads.get_upload(str(upload_id))


# ─── Materials ────────────────────────────────────────────────────────────────

@router.post("/projects/{project_id}/materials/auto-match", response_model=MatchResult)
async def auto_match_materials(
    project_id: uuid.UUID,
    body: AutoMatchRequest,
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    return await ingestion.apply_automatic_matches(str(project_id), [str(i) for i in body.material_ids])


@router.patch("/projects/{project_id}/materials/{material_id}", response_model=MaterialRecord)
async def update_material(
    project_id: uuid.UUID,
    material_id: uuid.UUID,
    body: MaterialUpdate,
    materials: MaterialService = Depends(get_material_service),
):
    return await materials.update_material(str(project_id), str(material_id), body)


@router.delete("/projects/{project_id}/materials/{material_id}")
async def delete_material(
    project_id: uuid.UUID,
    material_id: uuid.UUID,
    materials: MaterialService = Depends(get_material_service),
):
    deleted = await materials.delete_material(str(project_id), str(material_id))
    return {"deleted": deleted}
