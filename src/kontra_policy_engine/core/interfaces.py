"""Abstract interfaces (Protocol classes) for the policy engine.

Defines the contracts between the service layer and the adapter layer using
Python's typing.Protocol. Services depend on these protocols, never on
concrete adapter implementations, so tests can pass AsyncMock repositories.

Protocols defined:
- IPackRepository
- IRegulationRepository
- IRuleRepository
- IFindingRepository
- IEntitySource
"""

import uuid
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Protocol

from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.core.actions import FindingDraft, TaskDraft
from kontra_policy_engine.core.models import (
    ComplianceFinding,
    ComplianceOverride,
    PolicyPack,
    PolicyRule,
    PolicyRuleVersion,
    Regulation,
)


class IPackRepository(Protocol):
    """Repository contract for PolicyPack persistence."""

    async def create(
        self,
        tenant: TenantContext,
        name: str,
        authority: str,
        description: str | None = None,
        status: str = "active",
    ) -> PolicyPack:
        ...

    async def get_by_id(self, pack_id: uuid.UUID, tenant: TenantContext) -> PolicyPack:
        """Retrieve a pack by ID.

        Raises:
            NotFoundError: If no pack exists with the given ID for this tenant.
        """
        ...

    async def list_all(self, tenant: TenantContext) -> list[PolicyPack]:
        ...

    async def update(self, pack_id: uuid.UUID, tenant: TenantContext, changes: dict[str, Any]) -> PolicyPack:
        ...


class IRegulationRepository(Protocol):
    """Repository contract for Regulation persistence."""

    async def create(self, tenant: TenantContext, fields: dict[str, Any]) -> Regulation:
        ...

    async def list_all(self, tenant: TenantContext, pack_id: uuid.UUID | None = None) -> list[Regulation]:
        ...


class IRuleRepository(Protocol):
    """Repository contract for PolicyRule and PolicyRuleVersion persistence."""

    async def create_rule(
        self,
        tenant: TenantContext,
        pack_id: uuid.UUID,
        name: str,
        applies_to: str | None,
        regulation_id: uuid.UUID | None = None,
    ) -> PolicyRule:
        ...

    async def get_rule(self, rule_id: uuid.UUID, tenant: TenantContext, for_update: bool = False) -> PolicyRule:
        """Retrieve a rule, optionally locking its row for the transaction.

        Raises:
            NotFoundError: If not found.
        """
        ...

    async def list_rules(self, tenant: TenantContext, pack_id: uuid.UUID | None = None) -> list[PolicyRule]:
        ...

    async def next_version_number(self, rule_id: uuid.UUID, tenant: TenantContext) -> int:
        ...

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
        ...

    async def get_version(
        self,
        version_id: uuid.UUID,
        tenant: TenantContext,
        for_update: bool = False,
    ) -> PolicyRuleVersion:
        """Retrieve a rule version.

        Raises:
            NotFoundError: If not found.
        """
        ...

    async def list_versions(
        self,
        rule_id: uuid.UUID,
        tenant: TenantContext,
        status: str | None = None,
    ) -> list[PolicyRuleVersion]:
        ...

    async def list_active_versions(self, tenant: TenantContext, entity_type: str) -> list[PolicyRuleVersion]:
        """Return active versions whose rule applies to ``entity_type`` or to every type."""
        ...

    async def flush(self) -> None:
        ...


class IFindingRepository(Protocol):
    """Repository contract for findings, tasks and overrides."""

    async def find_open(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
        rule_version_id: uuid.UUID,
    ) -> ComplianceFinding | None:
        ...

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
        """Insert a finding and its tasks atomically.

        Raises:
            DuplicateFindingError: If an open finding already exists for the key.
        """
        ...

    async def get_by_id(self, finding_id: uuid.UUID, tenant: TenantContext) -> ComplianceFinding:
        ...

    async def list_findings(
        self,
        tenant: TenantContext,
        status: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 200,
    ) -> list[ComplianceFinding]:
        ...

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
        ...

    async def list_overrides(self, finding_id: uuid.UUID, tenant: TenantContext) -> list[ComplianceOverride]:
        ...

    async def flush(self) -> None:
        ...


class IEntitySource(Protocol):
    """Read-only access to the entities rules are evaluated against (loans, ...)."""

    async def list_entities(self, tenant: TenantContext, entity_type: str) -> list[Mapping[str, Any]]:
        """Return every entity of ``entity_type`` owned by the tenant.

        Raises:
            ValidationError: If ``entity_type`` is not configured.
        """
        ...

    async def get_entity(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
    ) -> Mapping[str, Any] | None:
        """Return one entity, or None when it does not exist for the tenant."""
        ...
