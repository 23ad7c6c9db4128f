"""
test_upload_service.py: Upload Lifecycle Tracker.

Tests cover:
  - create_upload starts in Processing with zero counts
  - Processing -> Completed attaches counts
  - Processing -> Failed keeps the error and zero counts
  - terminal states reject further transitions
  - unknown project / upload, empty filename
"""

import pytest

from app.models.orm_models import Upload, gen_uuid
from app.services.errors import (
    ProjectNotFoundError,
    UploadNotFoundError,
    UploadStateError,
    ValidationError,
)
from app.services.upload_service import UploadTracker


@pytest.fixture
def tracker_service(session_factory):
    return UploadTracker(session_factory)


class TestCreateUpload:

    @pytest.mark.asyncio
    async def test_new_upload_is_processing(self, tracker_service, project):
        record = await tracker_service.create_upload(project.id, "  tower.ifc ")
        assert record.status == "Processing"
        assert record.filename == "tower.ifc"
        assert (record.counts.elements, record.counts.materials) == (0, 0)
        assert record.error is None
        assert record.created_at is not None

    @pytest.mark.asyncio
    async def test_unknown_project(self, tracker_service, count_rows):
        with pytest.raises(ProjectNotFoundError):
            await tracker_service.create_upload(gen_uuid(), "tower.ifc")
        assert await count_rows(Upload) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename", ["", "   ", None])
    async def test_filename_required(self, tracker_service, project, filename):
        with pytest.raises(ValidationError) as exc_info:
            await tracker_service.create_upload(project.id, filename)
        assert exc_info.value.field == "filename"


class TestTransitions:

    @pytest.mark.asyncio
    async def test_mark_completed_attaches_counts(self, tracker_service, upload):
        record = await tracker_service.mark_completed(upload.id, 120, 14)
        assert record.status == "Completed"
        assert (record.counts.elements, record.counts.materials) == (120, 14)

        stored = await tracker_service.get_upload(upload.id)
        assert stored.status == "Completed"
        assert stored.counts.elements == 120

    @pytest.mark.asyncio
    async def test_mark_failed_keeps_error_and_zero_counts(self, tracker_service, upload):
        record = await tracker_service.mark_failed(upload.id, "EC3 error: HTTP 503")
        assert record.status == "Failed"
        assert record.error == "EC3 error: HTTP 503"
        assert (record.counts.elements, record.counts.materials) == (0, 0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", ["completed", "failed"])
    async def test_terminal_state_is_final(self, tracker_service, upload, first):
        if first == "completed":
            await tracker_service.mark_completed(upload.id, 1, 1)
        else:
            await tracker_service.mark_failed(upload.id, "boom")

        with pytest.raises(UploadStateError):
            await tracker_service.mark_completed(upload.id, 2, 2)
        with pytest.raises(UploadStateError):
            await tracker_service.mark_failed(upload.id, "again")

        stored = await tracker_service.get_upload(upload.id)
        assert stored.status == ("Completed" if first == "completed" else "Failed")

    @pytest.mark.asyncio
    async def test_unknown_upload(self, tracker_service):
        with pytest.raises(UploadNotFoundError):
            await tracker_service.get_upload(gen_uuid())
        with pytest.raises(UploadNotFoundError):
            await tracker_service.mark_completed(gen_uuid(), 0, 0)
