"""FastAPI dependency injection: service factories.

Every factory uses the default session factory (app.db.AsyncSessionLocal);
tests swap them via ``app.dependency_overrides``.
"""
from app.services.catalog_client import CatalogClient
from app.services.indicator_engine import IndicatorEngine
from app.services.ingestion_service import IngestionService
from app.services.material_service import MaterialService
from app.services.project_service import ProjectService
from app.services.upload_service import UploadTracker


def get_ingestion_service() -> IngestionService:
    return IngestionService(catalog_client=CatalogClient())


def get_material_service() -> MaterialService:
    return MaterialService()


def get_indicator_engine() -> IndicatorEngine:
    return IndicatorEngine()


def get_upload_tracker() -> UploadTracker:
    return UploadTracker()


def get_project_service() -> ProjectService:
    return ProjectService()
