"""
Typed error hierarchy for the ingestion and matching pipeline.

Every error carries an HTTP status and a stable machine code so the API layer
can render it without knowing which service raised it.  Services raise these
directly, or wrap foreign exceptions (SQLAlchemy, httpx) with
``raise XError(...) from exc`` so the original cause stays attached.
"""
from typing import Optional


class AppError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.field:
            payload["field"] = self.field
        return payload


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    resource = "Resource"

    def __init__(self, identifier: str, message: Optional[str] = None):
        super().__init__(message or f"{self.resource} not found: {identifier}")
        self.identifier = identifier


class ProjectNotFoundError(NotFoundError):
    code = "PROJECT_NOT_FOUND"
    resource = "Project"


class UploadNotFoundError(NotFoundError):
    code = "UPLOAD_NOT_FOUND"
    resource = "Upload"


class MaterialNotFoundError(NotFoundError):
    code = "MATERIAL_NOT_FOUND"
    resource = "Material"


class ElementNotFoundError(NotFoundError):
    code = "ELEMENT_NOT_FOUND"
    resource = "Element"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class ExternalServiceError(AppError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} service error: {message}")
        self.service = service


class DatabaseError(AppError):
    status_code = 500
    code = "DATABASE_ERROR"

    def __init__(self, operation: str, message: Optional[str] = None):
        detail = f"Database {operation} failed"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)
        self.operation = operation


# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------

class BusinessRuleError(AppError):
    status_code = 409
    code = "BUSINESS_RULE_VIOLATION"


class MatchError(BusinessRuleError):
    code = "MATCH_ERROR"


class UploadStateError(BusinessRuleError):
    code = "UPLOAD_STATE_ERROR"


class MaterialUpdateError(BusinessRuleError):
    code = "MATERIAL_UPDATE_ERROR"


class MaterialDeleteError(BusinessRuleError):
    code = "MATERIAL_DELETE_ERROR"
