"""SQLAlchemy repositories for the policy engine primary database.

Each repository implements the corresponding interface from core/interfaces.py
and extends BaseRepository for tenant-scoped lookups.

Repositories:
- PackRepository         — PolicyPack CRUD
- RegulationRepository   — Regulation CRUD
- RuleRepository         — PolicyRule and PolicyRuleVersion persistence
- FindingRepository      — ComplianceFinding, ComplianceTask, ComplianceOverride

NOTE: PolicyImpactRepository lives in impact_simulation.py next to the
service that drives it.
"""

import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.common.database import BaseRepository
from kontra_policy_engine.common.errors import (
    ConflictError,
    DuplicateFindingError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from kontra_policy_engine.common.observability import get_logger
from kontra_policy_engine.core.actions import FindingDraft, TaskDraft
from kontra_policy_engine.core.models import (
    FINDING_NON_TERMINAL,
    FINDING_OPEN,
    RULE_DRAFT,
    VERSION_ACTIVE,
    VERSION_DRAFT,
    ComplianceFinding,
    ComplianceOverride,
    ComplianceTask,
    PolicyPack,
    PolicyRule,
    PolicyRuleVersion,
    Regulation,
)

logger = get_logger(__name__)


def to_date(value: Any, field: str = "due_date") -> date | None:
    """Convert an ISO date string (or date) to a date for a Date column.

    Raises:
        ValidationError: If ``value`` is not an ISO date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO date, got {value!r}", field=field) from exc


class PackRepository(BaseRepository[PolicyPack]):
    """Repository for PolicyPack persistence.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, PolicyPack)

    async def create(
        self,
        tenant: TenantContext,
        name: str,
        authority: str,
        description: str | None = None,
        status: str = "active",
    ) -> PolicyPack:
        """Create and persist a new policy pack."""
        pack = PolicyPack(
            tenant_id=tenant.tenant_id,
            name=name,
            authority=authority,
            description=description,
            status=status,
        )
        return await self.add(pack)

    async def get_by_id(self, pack_id: uuid.UUID, tenant: TenantContext) -> PolicyPack:
        return await self.get_scoped(pack_id, tenant.tenant_id)

    async def list_all(self, tenant: TenantContext) -> list[PolicyPack]:
        """List packs for a tenant, newest first."""
        stmt = (
            select(PolicyPack)
            .where(PolicyPack.tenant_id == tenant.tenant_id)
            .order_by(PolicyPack.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update(self, pack_id: uuid.UUID, tenant: TenantContext, changes: dict[str, Any]) -> PolicyPack:
        """Apply a partial update to a pack.

        Args:
            pack_id: The pack UUID.
            tenant: The tenant context.
            changes: Column values to set; keys with None values are skipped.

        Returns:
            The updated PolicyPack.
        """
        pack = await self.get_scoped(pack_id, tenant.tenant_id)
        for key, value in changes.items():
            if value is not None:
                setattr(pack, key, value)
        await self._session.flush()
        return pack


class RegulationRepository(BaseRepository[Regulation]):
    """Repository for Regulation persistence.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Regulation)

    async def create(self, tenant: TenantContext, fields: dict[str, Any]) -> Regulation:
        """Create and persist a regulation from validated request fields."""
        regulation = Regulation(tenant_id=tenant.tenant_id, **fields)
        return await self.add(regulation)

    async def list_all(self, tenant: TenantContext, pack_id: uuid.UUID | None = None) -> list[Regulation]:
        """List regulations for a tenant, optionally for one pack, newest first."""
        stmt = select(Regulation).where(Regulation.tenant_id == tenant.tenant_id)
        if pack_id is not None:
            stmt = stmt.where(Regulation.pack_id == pack_id)
        stmt = stmt.order_by(Regulation.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class RuleRepository(BaseRepository[PolicyRule]):
    """Repository for PolicyRule and PolicyRuleVersion persistence.

    Version status transitions are applied by RuleService on the loaded ORM
    objects; this repository only reads and inserts.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, PolicyRule)

    async def create_rule(
        self,
        tenant: TenantContext,
        pack_id: uuid.UUID,
        name: str,
        applies_to: str | None,
        regulation_id: uuid.UUID | None = None,
    ) -> PolicyRule:
        """Create a rule in draft status (without versions)."""
        rule = PolicyRule(
            tenant_id=tenant.tenant_id,
            pack_id=pack_id,
            regulation_id=regulation_id,
            name=name,
            applies_to=applies_to,
            status=RULE_DRAFT,
            versions=[],
        )
        return await self.add(rule)

    async def get_rule(self, rule_id: uuid.UUID, tenant: TenantContext, for_update: bool = False) -> PolicyRule:
        """Retrieve a rule by ID.

        Args:
            rule_id: The rule UUID.
            tenant: The tenant context.
            for_update: Lock the rule row for the rest of the transaction.

        Raises:
            NotFoundError: If not found.
        """
        return await self.get_scoped(rule_id, tenant.tenant_id, for_update=for_update)

    async def list_rules(self, tenant: TenantContext, pack_id: uuid.UUID | None = None) -> list[PolicyRule]:
        """List rules with their versions, most recently updated first."""
        stmt = select(PolicyRule).where(PolicyRule.tenant_id == tenant.tenant_id)
        if pack_id is not None:
            stmt = stmt.where(PolicyRule.pack_id == pack_id)
        stmt = stmt.order_by(PolicyRule.updated_at.desc()).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def next_version_number(self, rule_id: uuid.UUID, tenant: TenantContext) -> int:
        """Return max(version) + 1 for the rule, or 1 when it has none."""
        stmt = select(func.max(PolicyRuleVersion.version)).where(
            PolicyRuleVersion.rule_id == rule_id,
            PolicyRuleVersion.tenant_id == tenant.tenant_id,
        )
        result = await self._session.execute(stmt)
        return (result.scalar() or 0) + 1

    async def create_version(
        self,
        tenant: TenantContext,
        rule: PolicyRule,
        version_number: int,
        conditions: dict[str, Any],
        actions: list[Any],
        severity: str,
        change_note: str | None,
        effective_date: date | None,
        created_by: uuid.UUID | None,
    ) -> PolicyRuleVersion:
        """Insert a draft version of ``rule``."""
        version = PolicyRuleVersion(
            tenant_id=tenant.tenant_id,
            rule=rule,
            version=version_number,
            status=VERSION_DRAFT,
            conditions=conditions,
            actions=actions,
            severity=severity,
            change_note=change_note,
            effective_date=effective_date,
            created_by=created_by,
        )
        version = await self.add(version)
        logger.info(
            "Rule version created",
            rule_id=str(rule.id),
            version_id=str(version.id),
            version=version_number,
        )
        return version

    async def get_version(
        self,
        version_id: uuid.UUID,
        tenant: TenantContext,
        for_update: bool = False,
    ) -> PolicyRuleVersion:
        """Retrieve a rule version by ID.

        Raises:
            NotFoundError: If not found.
        """
        stmt = select(PolicyRuleVersion).where(
            PolicyRuleVersion.id == version_id,
            PolicyRuleVersion.tenant_id == tenant.tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFoundError(resource="PolicyRuleVersion", resource_id=str(version_id))
        return version

    async def list_versions(
        self,
        rule_id: uuid.UUID,
        tenant: TenantContext,
        status: str | None = None,
    ) -> list[PolicyRuleVersion]:
        """List a rule's versions in version order, optionally filtered by status."""
        stmt = select(PolicyRuleVersion).where(
            PolicyRuleVersion.rule_id == rule_id,
            PolicyRuleVersion.tenant_id == tenant.tenant_id,
        )
        if status is not None:
            stmt = stmt.where(PolicyRuleVersion.status == status)
        stmt = stmt.order_by(PolicyRuleVersion.version)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_versions(self, tenant: TenantContext, entity_type: str) -> list[PolicyRuleVersion]:
        """Return every active version whose rule applies to ``entity_type`` (or to any type).

        Args:
            tenant: The tenant context.
            entity_type: The entity type being evaluated.

        Returns:
            Active versions with their rules loaded.
        """
        stmt = (
            select(PolicyRuleVersion)
            .join(PolicyRule, PolicyRule.id == PolicyRuleVersion.rule_id)
            .where(
                PolicyRuleVersion.tenant_id == tenant.tenant_id,
                PolicyRuleVersion.status == VERSION_ACTIVE,
                or_(PolicyRule.applies_to == entity_type, PolicyRule.applies_to.is_(None)),
            )
            .order_by(PolicyRuleVersion.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def flush(self) -> None:
        """Flush pending version changes.

        Raises:
            ConflictError: If the flush would leave two active versions for a
                rule (a concurrent activation won the race).
        """
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "Rule version change conflicts with a concurrent update",
                details={"error": str(exc.orig)},
            ) from exc


class FindingRepository(BaseRepository[ComplianceFinding]):
    """Repository for findings, their tasks, and the override audit trail.

    Args:
        session: The primary DB async session.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, ComplianceFinding)

    async def find_open(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
        rule_version_id: uuid.UUID,
    ) -> ComplianceFinding | None:
        """Return the open or in-progress finding for (entity, version), if any."""
        stmt = (
            select(ComplianceFinding)
            .where(
                ComplianceFinding.tenant_id == tenant.tenant_id,
                ComplianceFinding.entity_type == entity_type,
                ComplianceFinding.entity_id == entity_id,
                ComplianceFinding.rule_version_id == rule_version_id,
                ComplianceFinding.status.in_(FINDING_NON_TERMINAL),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def create_with_tasks(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
        pack_id: uuid.UUID | None,
        rule_id: uuid.UUID,
        rule_version_id: uuid.UUID,
        draft: FindingDraft,
        tasks: list[TaskDraft],
        details: dict[str, Any],
    ) -> ComplianceFinding:
        """Insert a finding and its tasks inside one savepoint.

        Either the finding and every task are written, or nothing is.

        Raises:
            DuplicateFindingError: If a concurrent evaluation already opened a
                finding for this (entity, rule version).
            ValidationError: If a due date is not an ISO date.
            StorageError: For any other integrity failure.
        """
        task_rows = [
            ComplianceTask(
                tenant_id=tenant.tenant_id,
                title=task.title,
                status="open",
                due_date=to_date(task.due_date),
                required_artifacts=task.required_artifacts,
                notes=task.notes,
            )
            for task in tasks
        ]
        finding = ComplianceFinding(
            tenant_id=tenant.tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            pack_id=pack_id,
            rule_id=rule_id,
            rule_version_id=rule_version_id,
            status=FINDING_OPEN,
            severity=draft.severity,
            title=draft.title,
            due_date=to_date(draft.due_date),
            details={**details, "required_artifacts": draft.required_artifacts, "blocks": draft.blocks},
            tasks=task_rows,
        )

        try:
            async with self._session.begin_nested():
                self._session.add(finding)
                await self._session.flush()
        except IntegrityError as exc:
            if await self.find_open(tenant, entity_type, entity_id, rule_version_id) is not None:
                raise DuplicateFindingError(entity_type, entity_id, str(rule_version_id)) from exc
            raise StorageError("Failed to persist finding", details={"error": str(exc.orig)}) from exc

        return finding

    async def get_by_id(self, finding_id: uuid.UUID, tenant: TenantContext) -> ComplianceFinding:
        return await self.get_scoped(finding_id, tenant.tenant_id)

    async def list_findings(
        self,
        tenant: TenantContext,
        status: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 200,
    ) -> list[ComplianceFinding]:
        """List findings (tasks eagerly loaded), newest first."""
        stmt = select(ComplianceFinding).where(ComplianceFinding.tenant_id == tenant.tenant_id)
        if status:
            stmt = stmt.where(ComplianceFinding.status == status)
        if entity_type:
            stmt = stmt.where(ComplianceFinding.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(ComplianceFinding.entity_id == entity_id)
        stmt = stmt.order_by(ComplianceFinding.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_override(
        self,
        tenant: TenantContext,
        finding_id: uuid.UUID,
        action: str,
        reason_code: str | None,
        reason: str | None,
        approved_by: uuid.UUID | None,
        expires_at: datetime | None,
    ) -> ComplianceOverride:
        """Append an override record. Overrides are never updated."""
        override = ComplianceOverride(
            tenant_id=tenant.tenant_id,
            finding_id=finding_id,
            action=action,
            reason_code=reason_code,
            reason=reason,
            approved_by=approved_by,
            approved_at=datetime.now(UTC),
            expires_at=expires_at,
        )
        self._session.add(override)
        await self._session.flush()
        return override

    async def list_overrides(self, finding_id: uuid.UUID, tenant: TenantContext) -> list[ComplianceOverride]:
        """Return a finding's override audit trail, oldest first."""
        stmt = (
            select(ComplianceOverride)
            .where(
                ComplianceOverride.finding_id == finding_id,
                ComplianceOverride.tenant_id == tenant.tenant_id,
            )
            .order_by(ComplianceOverride.approved_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
