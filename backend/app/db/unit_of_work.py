"""
Unit of work - one AsyncSession + one transaction spanning several service calls.

Every service method takes an optional ``uow`` argument:

    async with unit_of_work(uow, name="reconcile") as work:
        await work.session.execute(...)

When ``uow`` is None a new session is opened, committed on success and rolled
back on any exception or cancellation.  A SQLAlchemy error raised by the body
or by the commit itself is re-raised as DatabaseError.  When a unit of work is
passed in, the block simply participates in it: nothing is committed or rolled
back here, the owner of the outer block decides.
"""
import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import AsyncSessionLocal
from app.services.errors import DatabaseError

logger = logging.getLogger("lca-db")


class UnitOfWorkState(str, enum.Enum):
    STARTED = "Started"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


class UnitOfWork:
    """A live transaction plus its state. Created only by ``unit_of_work``."""

    def __init__(self, session: AsyncSession, name: str):
        self.session = session
        self.name = name
        self.state = UnitOfWorkState.STARTED

    @property
    def active(self) -> bool:
        return self.state is UnitOfWorkState.STARTED

    def __repr__(self) -> str:
        return f"<UnitOfWork {self.name} {self.state.value}>"


@asynccontextmanager
async def unit_of_work(
    uow: Optional[UnitOfWork] = None,
    *,
    name: str = "unit_of_work",
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[UnitOfWork]:
    if uow is not None:
        if not uow.active:
            raise DatabaseError(name, f"cannot join {uow.name}, already {uow.state.value}")
        yield uow
        return

    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        work = UnitOfWork(session, name)
        logger.debug("transaction started", extra={"transaction": name})
        try:
            yield work
            await session.commit()
        except (Exception, asyncio.CancelledError) as exc:
            await session.rollback()
            work.state = UnitOfWorkState.ROLLED_BACK
            logger.error("transaction rolled back", extra={"transaction": name}, exc_info=True)
            # commit-time failures (deferred constraints, lost connections) surface typed
            if isinstance(exc, SQLAlchemyError):
                raise DatabaseError(name, str(exc)) from exc
            raise
        work.state = UnitOfWorkState.COMMITTED
        logger.debug("transaction committed", extra={"transaction": name})


def dialect_insert(session: AsyncSession, entity):
    """Return the dialect's ``insert()`` so callers get ``on_conflict_do_update``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(entity)
    if dialect == "sqlite":
        return sqlite.insert(entity)
    raise DatabaseError("upsert", f"dialect {dialect!r} has no ON CONFLICT support")
