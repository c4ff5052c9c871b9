"""Core business logic services for the policy engine.

Service classes:
- ActionApplier: Persists the finding and tasks planned from a rule's actions
- PackService: Policy pack management
- RegulationService: Regulation records cited by rules
- RuleService: Rule authoring and the version lifecycle
- EvaluationService: Runs active rule versions against one entity
- FindingService: Finding status changes and the append-only override trail

All services are async-first. They accept injected repositories through their
constructors, contain no framework code, and return Pydantic response schemas.
Impact simulation lives in adapters/impact_simulation.py because it owns its
own sessions and background tasks.
"""

import uuid
from collections.abc import Mapping
from datetime import UTC, date, datetime
from typing import Any

from kontra_policy_engine.api.schemas import (
    FindingResponse,
    OverrideResponse,
    OverrideResultResponse,
    PackResponse,
    RegulationResponse,
    RuleResponse,
    RuleVersionResponse,
    TaskResponse,
)
from kontra_policy_engine.common.auth import TenantContext
from kontra_policy_engine.common.errors import (
    ConflictError,
    DuplicateFindingError,
    InvalidConditionError,
    NotFoundError,
    ValidationError,
)
from kontra_policy_engine.common.observability import get_logger
from kontra_policy_engine.core.actions import DEFAULT_SEVERITY, plan_actions, validate_actions
from kontra_policy_engine.core.conditions import (
    ConditionFailurePolicy,
    evaluate,
    parse_condition,
    snapshot_inputs,
    validate_condition,
)
from kontra_policy_engine.core.interfaces import (
    IEntitySource,
    IFindingRepository,
    IPackRepository,
    IRegulationRepository,
    IRuleRepository,
)
from kontra_policy_engine.core.models import (
    FINDING_DISMISSED,
    FINDING_IN_PROGRESS,
    FINDING_OPEN,
    FINDING_WAIVED,
    RULE_ACTIVE,
    RULE_DRAFT,
    RULE_IN_REVIEW,
    VERSION_ACTIVE,
    VERSION_APPROVED,
    VERSION_DRAFT,
    VERSION_IN_REVIEW,
    VERSION_RETIRED,
    ComplianceFinding,
    ComplianceOverride,
    ComplianceTask,
    PolicyPack,
    PolicyRule,
    PolicyRuleVersion,
    Regulation,
)

logger = get_logger(__name__)

INITIAL_CHANGE_NOTE = "Initial version"

# Allowed finding status changes; dismissed and waived are terminal.
_FINDING_TRANSITIONS: dict[str, frozenset[str]] = {
    FINDING_OPEN: frozenset({FINDING_IN_PROGRESS, FINDING_DISMISSED, FINDING_WAIVED}),
    FINDING_IN_PROGRESS: frozenset({FINDING_DISMISSED, FINDING_WAIVED}),
    FINDING_DISMISSED: frozenset(),
    FINDING_WAIVED: frozenset(),
}

# Finding status each override action projects to; any other action means in_progress.
_OVERRIDE_STATUS: dict[str, str] = {
    "dismiss": FINDING_DISMISSED,
    "waive": FINDING_WAIVED,
}


class ActionApplier:
    """Turns a triggered rule version into a persisted finding and its tasks.

    Args:
        finding_repo: Repository implementing IFindingRepository.
    """

    def __init__(self, finding_repo: IFindingRepository) -> None:
        self._finding_repo = finding_repo

    async def apply(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
        pack_id: uuid.UUID | None,
        rule_id: uuid.UUID,
        rule_version_id: uuid.UUID,
        actions: list[Any] | None,
        severity_default: str | None,
        details: dict[str, Any],
        today: date | None = None,
    ) -> ComplianceFinding:
        """Plan the action list and persist the result atomically.

        Args:
            tenant: The tenant context.
            entity_type: Entity type, e.g. "loan".
            entity_id: The matched entity's ID.
            pack_id: Pack of the triggering rule.
            rule_id: The triggering rule.
            rule_version_id: The triggering version.
            actions: The version's ordered action list.
            severity_default: The version's severity.
            details: Evidence written onto the finding.
            today: Reference date for relative due dates.

        Returns:
            The persisted ComplianceFinding with its tasks.

        Raises:
            DuplicateFindingError: If an open finding already exists for the key.
        """
        plan = plan_actions(actions, severity_default, today)
        finding = await self._finding_repo.create_with_tasks(
            tenant=tenant,
            entity_type=entity_type,
            entity_id=entity_id,
            pack_id=pack_id,
            rule_id=rule_id,
            rule_version_id=rule_version_id,
            draft=plan.finding,
            tasks=plan.tasks,
            details=details,
        )
        logger.info(
            "Compliance finding created",
            tenant_id=str(tenant.tenant_id),
            finding_id=str(finding.id),
            rule_version_id=str(rule_version_id),
            entity_type=entity_type,
            entity_id=entity_id,
            task_count=len(plan.tasks),
        )
        return finding


class PackService:
    """Policy pack management.

    Args:
        pack_repo: Repository implementing IPackRepository.
    """

    def __init__(self, pack_repo: IPackRepository) -> None:
        self._pack_repo = pack_repo

    async def create_pack(
        self,
        tenant: TenantContext,
        name: str,
        authority: str,
        description: str | None = None,
        status: str = "active",
    ) -> PackResponse:
        pack = await self._pack_repo.create(
            tenant=tenant,
            name=name,
            authority=authority,
            description=description,
            status=status,
        )
        logger.info("Policy pack created", tenant_id=str(tenant.tenant_id), pack_id=str(pack.id))
        return _pack_to_response(pack)

    async def list_packs(self, tenant: TenantContext) -> list[PackResponse]:
        packs = await self._pack_repo.list_all(tenant)
        return [_pack_to_response(pack) for pack in packs]

    async def update_pack(self, tenant: TenantContext, pack_id: uuid.UUID, changes: dict[str, Any]) -> PackResponse:
        """Apply a partial update to a pack.

        Raises:
            NotFoundError: If the pack does not exist.
        """
        pack = await self._pack_repo.update(pack_id, tenant, changes)
        return _pack_to_response(pack)


class RegulationService:
    """Regulation records that rules cite.

    Args:
        regulation_repo: Repository implementing IRegulationRepository.
        pack_repo: Used to check the owning pack exists.
    """

    def __init__(self, regulation_repo: IRegulationRepository, pack_repo: IPackRepository) -> None:
        self._regulation_repo = regulation_repo
        self._pack_repo = pack_repo

    async def create_regulation(self, tenant: TenantContext, fields: dict[str, Any]) -> RegulationResponse:
        """Record a regulation.

        Raises:
            NotFoundError: If ``pack_id`` is given and the pack does not exist.
        """
        if fields.get("pack_id") is not None:
            await self._pack_repo.get_by_id(fields["pack_id"], tenant)
        regulation = await self._regulation_repo.create(tenant, fields)
        logger.info("Regulation created", tenant_id=str(tenant.tenant_id), regulation_id=str(regulation.id))
        return _regulation_to_response(regulation)

    async def list_regulations(
        self,
        tenant: TenantContext,
        pack_id: uuid.UUID | None = None,
    ) -> list[RegulationResponse]:
        regulations = await self._regulation_repo.list_all(tenant, pack_id=pack_id)
        return [_regulation_to_response(r) for r in regulations]


class RuleService:
    """Rule authoring and the version lifecycle.

    Versions move draft → in_review → approved → active → retired. Condition
    trees and action lists are validated strictly when authored and may only
    change while a version is a draft.

    Args:
        rule_repo: Repository implementing IRuleRepository.
        pack_repo: Used to check a new rule's pack exists.
    """

    def __init__(self, rule_repo: IRuleRepository, pack_repo: IPackRepository) -> None:
        self._rule_repo = rule_repo
        self._pack_repo = pack_repo

    async def create_rule(
        self,
        tenant: TenantContext,
        pack_id: uuid.UUID,
        name: str,
        applies_to: str | None = "loan",
        regulation_id: uuid.UUID | None = None,
        conditions: dict[str, Any] | None = None,
        actions: list[Any] | None = None,
        severity: str | None = DEFAULT_SEVERITY,
        effective_date: date | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> RuleResponse:
        """Create a draft rule and its first draft version.

        Args:
            tenant: The tenant context.
            pack_id: Owning pack.
            name: Rule name.
            applies_to: Entity type evaluated by the rule; None applies to every type.
            regulation_id: Optional cited regulation.
            conditions: Condition tree for version 1.
            actions: Action list for version 1.
            severity: Default finding severity for version 1.
            effective_date: Optional effective date for version 1.
            actor_id: The authoring user.

        Returns:
            The rule with version 1.

        Raises:
            NotFoundError: If the pack does not exist.
            InvalidConditionError: If the condition tree is malformed.
            ValidationError: If an action is malformed.
        """
        conditions = conditions or {}
        validate_condition(conditions)
        clean_actions = validate_actions(actions or [])
        await self._pack_repo.get_by_id(pack_id, tenant)

        rule = await self._rule_repo.create_rule(
            tenant=tenant,
            pack_id=pack_id,
            name=name,
            applies_to=applies_to,
            regulation_id=regulation_id,
        )
        await self._rule_repo.create_version(
            tenant=tenant,
            rule=rule,
            version_number=1,
            conditions=conditions,
            actions=clean_actions,
            severity=severity or DEFAULT_SEVERITY,
            change_note=INITIAL_CHANGE_NOTE,
            effective_date=effective_date,
            created_by=actor_id,
        )
        logger.info("Policy rule created", tenant_id=str(tenant.tenant_id), rule_id=str(rule.id), rule_name=name)
        return _rule_to_response(rule)

    async def list_rules(self, tenant: TenantContext, pack_id: uuid.UUID | None = None) -> list[RuleResponse]:
        rules = await self._rule_repo.list_rules(tenant, pack_id=pack_id)
        return [_rule_to_response(rule) for rule in rules]

    async def create_version(
        self,
        tenant: TenantContext,
        rule_id: uuid.UUID,
        conditions: dict[str, Any] | None = None,
        actions: list[Any] | None = None,
        severity: str | None = DEFAULT_SEVERITY,
        change_note: str | None = None,
        effective_date: date | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> RuleVersionResponse:
        """Add the next draft version (max version + 1) to a rule.

        Raises:
            NotFoundError: If the rule does not exist.
            InvalidConditionError: If the condition tree is malformed.
            ValidationError: If an action is malformed.
        """
        conditions = conditions or {}
        validate_condition(conditions)
        clean_actions = validate_actions(actions or [])

        rule = await self._rule_repo.get_rule(rule_id, tenant, for_update=True)
        number = await self._rule_repo.next_version_number(rule.id, tenant)
        version = await self._rule_repo.create_version(
            tenant=tenant,
            rule=rule,
            version_number=number,
            conditions=conditions,
            actions=clean_actions,
            severity=severity or DEFAULT_SEVERITY,
            change_note=change_note,
            effective_date=effective_date,
            created_by=actor_id,
        )
        return _version_to_response(version)

    async def update_version(
        self,
        tenant: TenantContext,
        version_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> RuleVersionResponse:
        """Edit a draft version in place.

        Args:
            tenant: The tenant context.
            version_id: The version to edit.
            changes: Any of conditions, actions, severity, change_note,
                effective_date. None values are ignored.

        Raises:
            ConflictError: If the version is no longer a draft.
            InvalidConditionError: If the new condition tree is malformed.
            ValidationError: If a new action is malformed.
        """
        version = await self._rule_repo.get_version(version_id, tenant, for_update=True)
        if version.status != VERSION_DRAFT:
            raise ConflictError(
                f"Version {version_id} is {version.status}; only draft versions can be edited",
                details={"version_id": str(version_id), "status": version.status},
            )

        if changes.get("conditions") is not None:
            validate_condition(changes["conditions"])
            version.conditions = changes["conditions"]
        if changes.get("actions") is not None:
            version.actions = validate_actions(changes["actions"])
        for key in ("severity", "change_note", "effective_date"):
            if changes.get(key) is not None:
                setattr(version, key, changes[key])

        await self._rule_repo.flush()
        return _version_to_response(version)

    async def submit_rule(self, tenant: TenantContext, rule_id: uuid.UUID) -> RuleResponse:
        """Send every draft version of a rule to review.

        A rule that already has an active version stays active; otherwise it
        moves to in_review with its drafts.

        Raises:
            ConflictError: If the rule has no draft versions.
        """
        rule = await self._rule_repo.get_rule(rule_id, tenant, for_update=True)
        drafts = await self._rule_repo.list_versions(rule.id, tenant, status=VERSION_DRAFT)
        if not drafts:
            raise ConflictError(
                f"Rule {rule_id} has no draft versions to submit",
                details={"rule_id": str(rule_id)},
            )

        for version in drafts:
            version.status = VERSION_IN_REVIEW
        if rule.current_version_id is None:
            rule.status = RULE_IN_REVIEW
        await self._rule_repo.flush()

        logger.info(
            "Policy rule submitted for review",
            tenant_id=str(tenant.tenant_id),
            rule_id=str(rule.id),
            versions=[v.version for v in drafts],
        )
        return _rule_to_response(rule)

    async def approve_version(
        self,
        tenant: TenantContext,
        version_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> RuleVersionResponse:
        """Approve a version under review, stamping the approver.

        Raises:
            ConflictError: If the version is not in_review.
        """
        version = await self._rule_repo.get_version(version_id, tenant, for_update=True)
        _require_version_status(version, VERSION_IN_REVIEW, "approved")

        version.status = VERSION_APPROVED
        version.approved_by = actor_id
        version.approved_at = datetime.now(UTC)
        await self._rule_repo.flush()

        logger.info(
            "Rule version approved",
            tenant_id=str(tenant.tenant_id),
            version_id=str(version.id),
            approved_by=str(actor_id) if actor_id else None,
        )
        return _version_to_response(version)

    async def activate_version(self, tenant: TenantContext, version_id: uuid.UUID) -> RuleResponse:
        """Make an approved version the rule's single active version.

        The rule row is locked for the transaction. The previously active
        version is retired and flushed before the target is promoted.

        Raises:
            ConflictError: If the version is not approved, or a concurrent
                activation of the same rule won.
        """
        version = await self._rule_repo.get_version(version_id, tenant, for_update=True)
        _require_version_status(version, VERSION_APPROVED, "activated")

        rule = await self._rule_repo.get_rule(version.rule_id, tenant, for_update=True)
        previous = await self._rule_repo.list_versions(rule.id, tenant, status=VERSION_ACTIVE)
        for active in previous:
            active.status = VERSION_RETIRED
        await self._rule_repo.flush()

        version.status = VERSION_ACTIVE
        rule.current_version_id = version.id
        rule.status = RULE_ACTIVE
        await self._rule_repo.flush()

        logger.info(
            "Rule version activated",
            tenant_id=str(tenant.tenant_id),
            rule_id=str(rule.id),
            version_id=str(version.id),
            retired=[str(v.id) for v in previous],
        )
        return _rule_to_response(rule)

    async def retire_version(self, tenant: TenantContext, version_id: uuid.UUID) -> RuleVersionResponse:
        """Retire an active or approved version.

        Retiring the active version clears the rule's current version and
        returns the rule to draft.

        Raises:
            ConflictError: If the version is neither active nor approved.
        """
        version = await self._rule_repo.get_version(version_id, tenant, for_update=True)
        if version.status not in (VERSION_ACTIVE, VERSION_APPROVED):
            raise ConflictError(
                f"Version {version_id} is {version.status} and cannot be retired",
                details={"version_id": str(version_id), "status": version.status},
            )

        was_active = version.status == VERSION_ACTIVE
        version.status = VERSION_RETIRED
        if was_active:
            rule = await self._rule_repo.get_rule(version.rule_id, tenant, for_update=True)
            if rule.current_version_id == version.id:
                rule.current_version_id = None
                rule.status = RULE_DRAFT
        await self._rule_repo.flush()

        logger.info("Rule version retired", tenant_id=str(tenant.tenant_id), version_id=str(version.id))
        return _version_to_response(version)


class EvaluationService:
    """Runs every applicable active rule version against one entity.

    Args:
        rule_repo: Repository implementing IRuleRepository.
        finding_repo: Repository implementing IFindingRepository.
        entity_source: Loads entities for evaluate_by_id.
        failure_policy: Treatment of malformed stored conditions.
    """

    def __init__(
        self,
        rule_repo: IRuleRepository,
        finding_repo: IFindingRepository,
        entity_source: IEntitySource | None = None,
        failure_policy: ConditionFailurePolicy = ConditionFailurePolicy.NEVER_TRIGGER,
    ) -> None:
        self._rule_repo = rule_repo
        self._finding_repo = finding_repo
        self._entity_source = entity_source
        self._failure_policy = failure_policy
        self._applier = ActionApplier(finding_repo)

    async def evaluate(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity: Mapping[str, Any],
        today: date | None = None,
    ) -> list[FindingResponse]:
        """Evaluate active versions against ``entity`` and open new findings.

        A version that triggers while an open or in-progress finding already
        exists for (entity, version) is skipped, so repeated evaluation of an
        unchanged entity creates nothing new.

        Args:
            tenant: The tenant context.
            entity_type: Entity type, e.g. "loan". Conditions address the
                entity as ``<entity_type>.<field>``.
            entity: The entity record. Must carry an ``id``.
            today: Reference date for relative due dates.

        Returns:
            Findings created by this call. Empty when nothing new triggered.

        Raises:
            ValidationError: If the entity has no id.
        """
        raw_id = entity.get("id")
        if raw_id is None or raw_id == "":
            raise ValidationError("entity must carry an 'id'", field="entity.id")
        entity_id = str(raw_id)

        versions = await self._rule_repo.list_active_versions(tenant, entity_type)
        context = {entity_type: entity}
        created: list[FindingResponse] = []

        for version in versions:
            try:
                node = parse_condition(version.conditions or {}, self._failure_policy)
            except InvalidConditionError as exc:
                logger.warning(
                    "Skipping rule version with malformed conditions",
                    tenant_id=str(tenant.tenant_id),
                    rule_version_id=str(version.id),
                    error=exc.message,
                )
                continue

            if not evaluate(node, context):
                continue

            existing = await self._finding_repo.find_open(tenant, entity_type, entity_id, version.id)
            if existing is not None:
                continue

            rule = version.rule
            details = {
                "rule_name": rule.name,
                "inputs_snapshot": snapshot_inputs(node, context, entity_type),
                "conditions": version.conditions,
                "actions": version.actions,
            }
            try:
                finding = await self._applier.apply(
                    tenant=tenant,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    pack_id=rule.pack_id,
                    rule_id=rule.id,
                    rule_version_id=version.id,
                    actions=version.actions,
                    severity_default=version.severity,
                    details=details,
                    today=today,
                )
            except DuplicateFindingError:
                logger.info(
                    "Finding already reported by a concurrent evaluation",
                    tenant_id=str(tenant.tenant_id),
                    rule_version_id=str(version.id),
                    entity_id=entity_id,
                )
                continue
            created.append(_finding_to_response(finding))

        logger.info(
            "Entity evaluated",
            tenant_id=str(tenant.tenant_id),
            entity_type=entity_type,
            entity_id=entity_id,
            versions_checked=len(versions),
            findings_created=len(created),
        )
        return created

    async def evaluate_by_id(
        self,
        tenant: TenantContext,
        entity_type: str,
        entity_id: str,
        today: date | None = None,
    ) -> list[FindingResponse]:
        """Load an entity from the entity source and evaluate it.

        Raises:
            NotFoundError: If the entity does not exist for the tenant.
        """
        if self._entity_source is None:
            raise ValidationError("No entity source is configured; pass the entity inline", field="entity_id")
        entity = await self._entity_source.get_entity(tenant, entity_type, entity_id)
        if entity is None:
            raise NotFoundError(resource=entity_type, resource_id=str(entity_id))
        return await self.evaluate(tenant, entity_type, entity, today=today)


class FindingService:
    """Finding status changes and the append-only override audit trail.

    Args:
        finding_repo: Repository implementing IFindingRepository.
        list_limit: Maximum findings returned by list_findings.
    """

    def __init__(self, finding_repo: IFindingRepository, list_limit: int = 200) -> None:
        self._finding_repo = finding_repo
        self._list_limit = list_limit

    async def list_findings(
        self,
        tenant: TenantContext,
        status: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> list[FindingResponse]:
        findings = await self._finding_repo.list_findings(
            tenant,
            status=status,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=self._list_limit,
        )
        return [_finding_to_response(f) for f in findings]

    async def update_status(self, tenant: TenantContext, finding_id: uuid.UUID, status: str) -> FindingResponse:
        """Move a finding to a new status.

        Raises:
            ValidationError: If ``status`` is not a finding status.
            ConflictError: If the transition is not allowed.
        """
        if status not in _FINDING_TRANSITIONS:
            raise ValidationError(f"Unknown finding status '{status}'", field="status")

        finding = await self._finding_repo.get_by_id(finding_id, tenant)
        allowed = _FINDING_TRANSITIONS[finding.status]
        if status not in allowed:
            raise ConflictError(
                f"Finding cannot move from {finding.status} to {status}",
                details={"finding_id": str(finding_id), "status": finding.status, "requested": status},
            )

        finding.status = status
        await self._finding_repo.flush()
        logger.info(
            "Finding status changed",
            tenant_id=str(tenant.tenant_id),
            finding_id=str(finding_id),
            status=status,
        )
        return _finding_to_response(finding)

    async def override(
        self,
        tenant: TenantContext,
        finding_id: uuid.UUID,
        action: str,
        reason_code: str | None = None,
        reason: str | None = None,
        expires_at: datetime | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> OverrideResultResponse:
        """Record an override and project it onto the finding's status.

        ``dismiss`` → dismissed, ``waive`` → waived, anything else → in_progress.

        Raises:
            ConflictError: If the finding is already dismissed or waived.
        """
        finding = await self._finding_repo.get_by_id(finding_id, tenant)
        if not _FINDING_TRANSITIONS[finding.status]:
            raise ConflictError(
                f"Finding is {finding.status} and cannot be overridden",
                details={"finding_id": str(finding_id), "status": finding.status},
            )

        override = await self._finding_repo.add_override(
            tenant=tenant,
            finding_id=finding.id,
            action=action,
            reason_code=reason_code,
            reason=reason,
            approved_by=actor_id,
            expires_at=expires_at,
        )
        finding.status = _OVERRIDE_STATUS.get(action, FINDING_IN_PROGRESS)
        await self._finding_repo.flush()

        logger.info(
            "Finding overridden",
            tenant_id=str(tenant.tenant_id),
            finding_id=str(finding_id),
            action=action,
            reason_code=reason_code,
            status=finding.status,
        )
        return OverrideResultResponse(override=_override_to_response(override), finding=_finding_to_response(finding))

    async def list_overrides(self, tenant: TenantContext, finding_id: uuid.UUID) -> list[OverrideResponse]:
        """Return a finding's override history, oldest first.

        Raises:
            NotFoundError: If the finding does not exist.
        """
        await self._finding_repo.get_by_id(finding_id, tenant)
        overrides = await self._finding_repo.list_overrides(finding_id, tenant)
        return [_override_to_response(o) for o in overrides]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_version_status(version: PolicyRuleVersion, expected: str, verb: str) -> None:
    if version.status != expected:
        raise ConflictError(
            f"Version {version.id} is {version.status}; only {expected} versions can be {verb}",
            details={"version_id": str(version.id), "status": version.status, "expected": expected},
        )


def _pack_to_response(pack: PolicyPack) -> PackResponse:
    return PackResponse(
        id=pack.id,
        tenant_id=pack.tenant_id,
        name=pack.name,
        authority=pack.authority,
        description=pack.description,
        status=pack.status,
        created_at=pack.created_at,
        updated_at=pack.updated_at,
    )


def _regulation_to_response(regulation: Regulation) -> RegulationResponse:
    return RegulationResponse(
        id=regulation.id,
        tenant_id=regulation.tenant_id,
        pack_id=regulation.pack_id,
        authority=regulation.authority,
        title=regulation.title,
        citation=regulation.citation,
        source_url=regulation.source_url,
        effective_date=regulation.effective_date,
        tags=list(regulation.tags or []),
        raw_text=regulation.raw_text,
        summary=regulation.summary,
        status=regulation.status,
        created_at=regulation.created_at,
        updated_at=regulation.updated_at,
    )


def _version_to_response(version: PolicyRuleVersion) -> RuleVersionResponse:
    """Convert a PolicyRuleVersion ORM model to a response schema.

    Args:
        version: The PolicyRuleVersion ORM instance.

    Returns:
        RuleVersionResponse Pydantic model.
    """
    return RuleVersionResponse(
        id=version.id,
        rule_id=version.rule_id,
        version=version.version,
        status=version.status,
        conditions=version.conditions or {},
        actions=list(version.actions or []),
        severity=version.severity,
        change_note=version.change_note,
        effective_date=version.effective_date,
        created_by=version.created_by,
        approved_by=version.approved_by,
        approved_at=version.approved_at,
        created_at=version.created_at,
        updated_at=version.updated_at,
    )


def _rule_to_response(rule: PolicyRule) -> RuleResponse:
    """Convert a PolicyRule ORM model (with versions) to a response schema."""
    return RuleResponse(
        id=rule.id,
        tenant_id=rule.tenant_id,
        pack_id=rule.pack_id,
        regulation_id=rule.regulation_id,
        name=rule.name,
        applies_to=rule.applies_to,
        current_version_id=rule.current_version_id,
        status=rule.status,
        versions=[_version_to_response(v) for v in sorted(rule.versions, key=lambda v: v.version)],
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _task_to_response(task: ComplianceTask) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        finding_id=task.finding_id,
        title=task.title,
        status=task.status,
        due_date=task.due_date,
        required_artifacts=list(task.required_artifacts or []),
        notes=task.notes,
    )


def _finding_to_response(finding: ComplianceFinding) -> FindingResponse:
    """Convert a ComplianceFinding ORM model (with tasks) to a response schema.

    Args:
        finding: The ComplianceFinding ORM instance.

    Returns:
        FindingResponse Pydantic model.
    """
    return FindingResponse(
        id=finding.id,
        tenant_id=finding.tenant_id,
        entity_type=finding.entity_type,
        entity_id=finding.entity_id,
        pack_id=finding.pack_id,
        rule_id=finding.rule_id,
        rule_version_id=finding.rule_version_id,
        status=finding.status,
        severity=finding.severity,
        title=finding.title,
        due_date=finding.due_date,
        details=finding.details or {},
        tasks=[_task_to_response(t) for t in finding.tasks],
        created_at=finding.created_at,
        updated_at=finding.updated_at,
    )


def _override_to_response(override: ComplianceOverride) -> OverrideResponse:
    return OverrideResponse(
        id=override.id,
        finding_id=override.finding_id,
        action=override.action,
        reason_code=override.reason_code,
        reason=override.reason,
        approved_by=override.approved_by,
        approved_at=override.approved_at,
        expires_at=override.expires_at,
    )
