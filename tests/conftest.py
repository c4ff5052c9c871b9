"""Test fixtures for kontra-policy-engine.

Provides:
- tenant_id / actor_id: Deterministic UUIDs
- mock_tenant: A TenantContext for the test tenant
- engine / session: In-memory SQLite (aiosqlite) with every table created,
  including a ``loans`` table for the entity source
- make_fake_* helpers: MagicMock ORM objects for service tests with mocked repositories
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Uuid, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.common.database import Base
from kontra_policy_engine.core import models  # noqa: F401  (registers tables on Base.metadata)

entity_metadata = MetaData()

loans_table = Table(
    "loans",
    entity_metadata,
    Column("id", String(64), primary_key=True),
    Column("org_id", Uuid, nullable=False),
    Column("risk_rating", Integer, nullable=True),
    Column("special_product", String(50), nullable=True),
    Column("principal", Float, nullable=True),
)


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    """Return a fixed tenant UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def actor_id() -> uuid.UUID:
    """Return a fixed actor UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def mock_tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    """Create the TenantContext used by service, repository and API tests."""
    return TenantContext(tenant_id=tenant_id, user_id=actor_id)


@pytest.fixture()
def other_tenant() -> TenantContext:
    return TenantContext(tenant_id=uuid.UUID("00000000-0000-0000-0000-0000000000ff"))


@pytest.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine shared across sessions through a static pool.

    pysqlite's own transaction handling is switched off so SAVEPOINTs behave
    the way they do on PostgreSQL.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(entity_metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def insert_loans(session: AsyncSession, org_id: uuid.UUID, loans: list[dict[str, Any]]) -> None:
    """Insert rows into the test ``loans`` table for ``org_id``."""
    await session.execute(loans_table.insert(), [{"org_id": org_id, **loan} for loan in loans])
    await session.flush()


# ---------------------------------------------------------------------------
# Fake ORM objects for services with mocked repositories
# ---------------------------------------------------------------------------


def make_fake_pack(tenant_id: uuid.UUID, name: str = "Servicing Guide") -> MagicMock:
    """Create a fake PolicyPack ORM object."""
    pack = MagicMock()
    pack.id = uuid.uuid4()
    pack.tenant_id = tenant_id
    pack.name = name
    pack.authority = "FHLMC"
    pack.description = None
    pack.status = "active"
    pack.created_at = datetime.now(UTC)
    pack.updated_at = datetime.now(UTC)
    return pack


def make_fake_rule(
    tenant_id: uuid.UUID,
    name: str = "High risk review",
    applies_to: str | None = "loan",
    status: str = "draft",
) -> MagicMock:
    """Create a fake PolicyRule ORM object with no versions."""
    rule = MagicMock()
    rule.id = uuid.uuid4()
    rule.tenant_id = tenant_id
    rule.pack_id = uuid.uuid4()
    rule.regulation_id = None
    rule.name = name
    rule.applies_to = applies_to
    rule.current_version_id = None
    rule.status = status
    rule.versions = []
    rule.created_at = datetime.now(UTC)
    rule.updated_at = datetime.now(UTC)
    return rule


def make_fake_version(
    rule: MagicMock,
    version: int = 1,
    status: str = "draft",
    conditions: dict[str, Any] | None = None,
    actions: list[Any] | None = None,
    severity: str = "medium",
) -> MagicMock:
    """Create a fake PolicyRuleVersion ORM object attached to ``rule``."""
    fake = MagicMock()
    fake.id = uuid.uuid4()
    fake.tenant_id = rule.tenant_id
    fake.rule_id = rule.id
    fake.rule = rule
    fake.version = version
    fake.status = status
    fake.conditions = conditions if conditions is not None else {}
    fake.actions = actions if actions is not None else []
    fake.severity = severity
    fake.change_note = None
    fake.effective_date = None
    fake.created_by = None
    fake.approved_by = None
    fake.approved_at = None
    fake.created_at = datetime.now(UTC)
    fake.updated_at = datetime.now(UTC)
    rule.versions.append(fake)
    return fake


def make_fake_finding(tenant_id: uuid.UUID, status: str = "open") -> MagicMock:
    """Create a fake ComplianceFinding ORM object without tasks."""
    finding = MagicMock()
    finding.id = uuid.uuid4()
    finding.tenant_id = tenant_id
    finding.entity_type = "loan"
    finding.entity_id = "loan-1"
    finding.pack_id = uuid.uuid4()
    finding.rule_id = uuid.uuid4()
    finding.rule_version_id = uuid.uuid4()
    finding.status = status
    finding.severity = "high"
    finding.title = "High risk loan"
    finding.due_date = None
    finding.details = {}
    finding.tasks = []
    finding.created_at = datetime.now(UTC)
    finding.updated_at = datetime.now(UTC)
    return finding


def make_fake_override(finding_id: uuid.UUID, action: str, actor_id: uuid.UUID | None = None) -> MagicMock:
    """Create a fake ComplianceOverride ORM object."""
    override = MagicMock()
    override.id = uuid.uuid4()
    override.finding_id = finding_id
    override.action = action
    override.reason_code = "RC1"
    override.reason = "Reviewed"
    override.approved_by = actor_id
    override.approved_at = datetime.now(UTC)
    override.expires_at = None
    return override
