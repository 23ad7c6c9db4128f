"""
test_unit_of_work.py: Transaction boundary tests for app.db.unit_of_work.

Tests cover:
  - owning unit of work commits on success and reports Committed
  - any exception or cancellation rolls back every write and reports RolledBack
  - a failing commit surfaces as DatabaseError chained to the driver error
  - a nested unit of work joins the outer transaction (same session, no
    early commit) so an outer failure also discards the inner writes
  - joining a finished unit of work is refused
  - dialect_insert picks the backend's ON CONFLICT-capable insert
  - DATABASE_URL normalisation onto the asyncpg driver
"""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.db.unit_of_work import UnitOfWorkState, dialect_insert, unit_of_work
from app.models.orm_models import Material, Project, gen_uuid
from app.services.errors import DatabaseError


class TestOwnedUnitOfWork:

    @pytest.mark.asyncio
    async def test_commit_on_success(self, session_factory, count_rows):
        async with unit_of_work(name="t", session_factory=session_factory) as work:
            work.session.add(Project(name="Committed"))
            assert work.state is UnitOfWorkState.STARTED
        assert work.state is UnitOfWorkState.COMMITTED
        assert await count_rows(Project) == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, session_factory, count_rows):
        with pytest.raises(RuntimeError):
            async with unit_of_work(name="t", session_factory=session_factory) as work:
                work.session.add(Project(name="Doomed"))
                await work.session.flush()
                raise RuntimeError("step failed")
        assert work.state is UnitOfWorkState.ROLLED_BACK
        assert await count_rows(Project) == 0

    @pytest.mark.asyncio
    async def test_commit_failure_surfaces_as_database_error(self, session_factory, count_rows):
        project_id = gen_uuid()
        with pytest.raises(DatabaseError) as exc_info:
            async with unit_of_work(name="duplicate_names", session_factory=session_factory) as work:
                work.session.add(Project(id=project_id, name="Dup"))
                # nothing is flushed until commit, where the unique constraint fires
                work.session.add_all([
                    Material(project_id=project_id, name="Concrete"),
                    Material(project_id=project_id, name="Concrete"),
                ])
        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert exc_info.value.operation == "duplicate_names"
        assert work.state is UnitOfWorkState.ROLLED_BACK
        assert await count_rows(Material) == 0

    @pytest.mark.asyncio
    async def test_rollback_on_cancellation(self, session_factory, count_rows):
        started = asyncio.Event()

        async def body():
            async with unit_of_work(name="cancelled", session_factory=session_factory) as work:
                work.session.add(Project(name="Never committed"))
                await work.session.flush()
                started.set()
                await asyncio.sleep(5)

        task = asyncio.create_task(body())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await count_rows(Project) == 0


class TestNestedUnitOfWork:

    @pytest.mark.asyncio
    async def test_nested_reuses_outer_session(self, session_factory):
        async with unit_of_work(name="outer", session_factory=session_factory) as outer:
            async with unit_of_work(outer, name="inner", session_factory=session_factory) as inner:
                assert inner is outer
                assert inner.session is outer.session
            # leaving the inner block must not end the transaction
            assert outer.state is UnitOfWorkState.STARTED

    @pytest.mark.asyncio
    async def test_outer_failure_discards_inner_writes(self, session_factory, count_rows):
        with pytest.raises(ValueError):
            async with unit_of_work(name="outer", session_factory=session_factory) as outer:
                async with unit_of_work(outer, name="inner") as inner:
                    inner.session.add(Project(name="Inner write"))
                    await inner.session.flush()
                raise ValueError("later step failed")
        assert await count_rows(Project) == 0

    @pytest.mark.asyncio
    async def test_inner_failure_rolls_back_outer(self, session_factory, count_rows):
        with pytest.raises(KeyError):
            async with unit_of_work(name="outer", session_factory=session_factory) as outer:
                outer.session.add(Project(name="Outer write"))
                await outer.session.flush()
                async with unit_of_work(outer, name="inner"):
                    raise KeyError("inner")
        assert outer.state is UnitOfWorkState.ROLLED_BACK
        assert await count_rows(Project) == 0

    @pytest.mark.asyncio
    async def test_joining_finished_unit_is_refused(self, session_factory):
        async with unit_of_work(name="done", session_factory=session_factory) as finished:
            pass
        with pytest.raises(DatabaseError):
            async with unit_of_work(finished, name="late"):
                pass


class TestDialectInsert:

    @pytest.mark.asyncio
    async def test_sqlite_insert_supports_on_conflict(self, session_factory):
        async with unit_of_work(session_factory=session_factory) as work:
            stmt = dialect_insert(work.session, Project)
            assert hasattr(stmt, "on_conflict_do_update")
            assert hasattr(stmt, "excluded")

    @pytest.mark.asyncio
    async def test_upsert_statement_executes(self, session_factory):
        async with unit_of_work(session_factory=session_factory) as work:
            stmt = dialect_insert(work.session, Project).values(
                id="00000000-0000-4000-8000-000000000001", name="First"
            )
            stmt = stmt.on_conflict_do_update(index_elements=["id"], set_={"name": stmt.excluded.name})
            await work.session.execute(stmt)
            second = dialect_insert(work.session, Project).values(
                id="00000000-0000-4000-8000-000000000001", name="Second"
            )
            second = second.on_conflict_do_update(index_elements=["id"], set_={"name": second.excluded.name})
            await work.session.execute(second)
        async with session_factory() as session:
            names = (await session.scalars(select(Project.name))).all()
        assert names == ["Second"]


class TestDatabaseUrl:

    @pytest.mark.parametrize("raw,expected", [
        ("postgres://u:p@db:5432/lca", "postgresql+asyncpg://u:p@db:5432/lca"),
        ("postgresql://u:p@db/lca", "postgresql+asyncpg://u:p@db/lca"),
        ("postgresql+asyncpg://u:p@db/lca", "postgresql+asyncpg://u:p@db/lca"),
        ("sqlite+aiosqlite:///lca.db", "sqlite+aiosqlite:///lca.db"),
    ])
    def test_normalize(self, raw, expected):
        from app.db import normalize_database_url
        assert normalize_database_url(raw) == expected

    def test_empty_url_falls_back_to_dev_placeholder(self):
        from app.db import normalize_database_url
        assert normalize_database_url("  ").startswith("postgresql+asyncpg://")
