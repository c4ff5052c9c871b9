"""Database foundation: declarative base, engine lifecycle, session dependency.

Every model extends ``TenantModel`` which adds the ``id`` (UUID), ``tenant_id``,
``created_at`` and ``updated_at`` columns. All repository queries filter on
``tenant_id`` explicitly.

Key exports:
- init_database(settings)   — Call at startup to create the engine
- close_database()          — Call at shutdown to dispose the engine
- get_db_session()          — FastAPI dependency (commit on success, rollback on error)
- get_session_factory()     — Session factory for work outside a request (impact runs)
- BaseRepository            — Tenant-scoped get/add helpers for repositories
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import JSON, DateTime, Uuid, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from kontra_policy_engine.common.errors import NotFoundError
from kontra_policy_engine.common.observability import get_logger

logger = get_logger(__name__)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Return the current UTC timestamp."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class TenantModel(Base):
    """Abstract base adding identity, tenant scope and timestamps."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
        comment="Owning tenant (organization) UUID",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


# Module-level engine and session factory, initialized by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_database(
    database_url: str,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    echo: bool = False,
) -> async_sessionmaker[AsyncSession]:
    """Initialize the engine and session factory.

    Pool options are only passed when given, so SQLite URLs (which use a
    static pool) work unchanged.

    Args:
        database_url: SQLAlchemy async URL.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        echo: Log emitted SQL.

    Returns:
        The session factory.
    """
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None and _session_factory is not None:
        return _session_factory

    engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if pool_size is not None:
        engine_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        engine_kwargs["max_overflow"] = max_overflow

    _engine = create_async_engine(database_url, **engine_kwargs)
    _session_factory = async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("Database engine initialized", dialect=_engine.dialect.name)
    return _session_factory


async def close_database() -> None:
    """Dispose the engine. Safe to call when never initialized."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. Call init_database() in the application lifespan handler."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a request-scoped session.

    Commits when the request handler returns, rolls back if it raises.

    Yields:
        AsyncSession: A session bound to the primary database.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


ModelT = TypeVar("ModelT", bound=TenantModel)


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped persistence helpers shared by every repository.

    Args:
        session: The primary DB async session.
        model: The ORM class this repository manages.
    """

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def get_scoped(self, record_id: uuid.UUID, tenant_id: uuid.UUID, for_update: bool = False) -> ModelT:
        """Load one record owned by the tenant.

        Args:
            record_id: Primary key.
            tenant_id: Owning tenant.
            for_update: Lock the row (SELECT ... FOR UPDATE) until the transaction ends.

        Raises:
            NotFoundError: If no such record exists for this tenant.
        """
        stmt = select(self._model).where(self._model.id == record_id, self._model.tenant_id == tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(resource=self._model.__name__, resource_id=str(record_id))
        return record

    async def add(self, record: ModelT) -> ModelT:
        """Persist a new record and flush so its defaults and id are populated."""
        self._session.add(record)
        await self._session.flush()
        return record

    async def flush(self) -> None:
        await self._session.flush()

    async def commit(self) -> None:
        await self._session.commit()
