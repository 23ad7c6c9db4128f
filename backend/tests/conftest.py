"""
conftest.py: Shared pytest fixtures for the LCA Estimator backend test suite.

Database fixtures build a throwaway SQLite database (aiosqlite driver) per test
from the ORM metadata; every service under test is handed that session factory
explicitly, so nothing touches the configured Postgres engine.

The external EC3 catalog is replaced by FakeCatalogClient, an in-process
stand-in keyed by exact search string.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import asyncio
import sys
import os
import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """async_sessionmaker bound to a fresh file-backed SQLite database."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from app.db import Base
    from app.models import orm_models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lca_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def project(session_factory):
    """A committed, empty project."""
    from app.services.project_service import ProjectService
    return await ProjectService(session_factory).create_project("Test Tower")


@pytest_asyncio.fixture
async def upload(session_factory, project):
    """A committed upload in Processing state for ``project``."""
    from app.services.upload_service import UploadTracker
    return await UploadTracker(session_factory).create_upload(project.id, "tower.ifc")


@pytest.fixture
def count_rows(session_factory):
    """Async helper: number of rows of an ORM class, optionally filtered."""
    from sqlalchemy import func, select

    async def _count(model, *where) -> int:
        async with session_factory() as session:
            return await session.scalar(select(func.count()).select_from(model).where(*where))

    return _count


# ---------------------------------------------------------------------------
# External catalog
# ---------------------------------------------------------------------------

class FakeCatalogClient:
    """
    Stands in for CatalogClient.

    entries : {search string: [CatalogEntry, ...]}
    errors  : {search string: exception raised for that search}
    delays  : {search string: seconds to sleep before answering}

    Searches cancelled while sleeping are recorded in ``cancelled``.
    """

    def __init__(self, entries=None, errors=None, delays=None):
        self.entries = entries or {}
        self.errors = errors or {}
        self.delays = delays or {}
        self.calls = []
        self.cancelled = []

    async def search(self, name):
        self.calls.append(name)
        if name in self.delays:
            try:
                await asyncio.sleep(self.delays[name])
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise
        if name in self.errors:
            raise self.errors[name]
        return list(self.entries.get(name, []))


@pytest.fixture
def make_entry():
    """Factory for CatalogEntry with sensible EC3-like defaults."""
    from app.models.ingestion_schema import CatalogEntry, ImpactFactors

    def _make(name, entry_id=None, gwp=0.1, ubp=150.0, penre=1.2,
              density_min=2300.0, density_max=2500.0, declared_unit="1 kg"):
        return CatalogEntry(
            id=entry_id or f"ec3-{name.lower().replace(' ', '-')}",
            name=name,
            impact_factors=ImpactFactors(
                gwp=gwp, eco_points=ubp, non_renewable_primary_energy=penre,
            ),
            declared_unit=declared_unit,
            density_min=density_min,
            density_max=density_max,
        )

    return _make


@pytest.fixture
def fake_catalog():
    """Factory: fake_catalog(entries={...}, errors={...}) -> FakeCatalogClient."""
    return FakeCatalogClient


@pytest.fixture
def ingestion_service(session_factory):
    """Factory: ingestion_service(catalog) -> IngestionService on the test DB."""
    from app.services.ingestion_service import IngestionService

    def _make(catalog=None, **kwargs):
        return IngestionService(
            catalog_client=catalog or FakeCatalogClient(),
            session_factory=session_factory,
            **kwargs,
        )

    return _make


@pytest.fixture(autouse=True)
def _reset_perf_tracker():
    from app.services.perf_monitor import tracker
    tracker.reset()
    yield
    tracker.reset()
