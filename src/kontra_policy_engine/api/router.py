"""API router for kontra-policy-engine.

All policy endpoints are registered here and included in main.py under the
/api/v1/policy prefix. Routes are thin; all business logic lives in the
service layer.

Endpoints:
- GET/POST    /packs                        — List / create policy packs
- PATCH       /packs/{id}                   — Update a pack
- GET/POST    /regulations                  — List / create regulations
- GET/POST    /rules                        — List / create rules (with version 1)
- POST        /rules/{id}/versions          — Add a draft version
- POST        /rules/{id}/submit            — Submit draft versions for review
- PATCH       /versions/{id}                — Edit a draft version
- POST        /versions/{id}/approve        — Approve a version under review
- POST        /versions/{id}/activate       — Activate an approved version
- POST        /versions/{id}/retire         — Retire a version
- POST        /evaluate                     — Evaluate active rules against an entity
- POST        /impact/run                   — Start an impact simulation
- GET         /impact/{run_id}              — Poll an impact run and its results
- POST        /impact/{run_id}/cancel       — Cancel a running impact run
- GET         /findings                     — List findings
- PATCH       /findings/{id}                — Change a finding's status
- POST        /findings/{id}/override       — Record an override
- GET         /findings/{id}/overrides      — Override audit trail
- POST        /conditions/validate          — Check a condition tree
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kontra_policy_engine.adapters.entity_source import SqlEntitySource
from kontra_policy_engine.adapters.impact_simulation import (
    ImpactRunScheduler,
    ImpactSimulationService,
    build_impact_service,
)
from kontra_policy_engine.adapters.repositories import (
    FindingRepository,
    PackRepository,
    RegulationRepository,
    RuleRepository,
)
from kontra_policy_engine.api.schemas import (
    ConditionValidateRequest,
    ConditionValidateResponse,
    EvaluateRequest,
    EvaluateResponse,
    FindingResponse,
    FindingStatusUpdateRequest,
    ImpactRunDetailResponse,
    ImpactRunRequest,
    ImpactRunResponse,
    ImpactRunStartResponse,
    OverrideRequest,
    OverrideResponse,
    OverrideResultResponse,
    PackCreateRequest,
    PackResponse,
    PackUpdateRequest,
    RegulationCreateRequest,
    RegulationResponse,
    RuleCreateRequest,
    RuleResponse,
    RuleVersionResponse,
    VersionCreateRequest,
    VersionUpdateRequest,
)
from kontra_policy_engine.common.auth import TenantContext, get_current_user
from kontra_policy_engine.common.database import get_db_session
from kontra_policy_engine.common.errors import InvalidConditionError
from kontra_policy_engine.common.observability import get_logger
from kontra_policy_engine.core.conditions import referenced_fields, validate_condition
from kontra_policy_engine.core.services import (
    EvaluationService,
    FindingService,
    PackService,
    RegulationService,
    RuleService,
)
from kontra_policy_engine.settings import Settings

logger = get_logger(__name__)

router = APIRouter(tags=["policy"])


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories and services together
# ---------------------------------------------------------------------------


def get_pack_service(session: Annotated[AsyncSession, Depends(get_db_session)]) -> PackService:
    return PackService(pack_repo=PackRepository(session))


def get_app_settings(request: Request) -> Settings:
    """Return the settings the application was created with."""
    return request.app.state.settings


def get_regulation_service(session: Annotated[AsyncSession, Depends(get_db_session)]) -> RegulationService:
    return RegulationService(regulation_repo=RegulationRepository(session), pack_repo=PackRepository(session))


def get_rule_service(session: Annotated[AsyncSession, Depends(get_db_session)]) -> RuleService:
    return RuleService(rule_repo=RuleRepository(session), pack_repo=PackRepository(session))


def get_evaluation_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> EvaluationService:
    """Construct EvaluationService with the configured entity source and failure policy.

    Args:
        session: Primary DB session.
        settings: Service settings.

    Returns:
        Fully wired EvaluationService instance.
    """
    entity_source = SqlEntitySource(
        session,
        entity_tables=settings.entity_tables,
        tenant_column=settings.entity_tenant_column,
        id_column=settings.entity_id_column,
    )
    return EvaluationService(
        rule_repo=RuleRepository(session),
        finding_repo=FindingRepository(session),
        entity_source=entity_source,
        failure_policy=settings.condition_failure_policy,
    )


def get_finding_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> FindingService:
    return FindingService(finding_repo=FindingRepository(session), list_limit=settings.findings_list_limit)


def get_impact_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ImpactSimulationService:
    return build_impact_service(session, settings)


def get_impact_scheduler(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ImpactRunScheduler | None:
    """Return the app's background scheduler, or None when runs execute inline."""
    if not settings.impact_run_in_background:
        return None
    return getattr(request.app.state, "impact_scheduler", None)


TenantDep = Annotated[TenantContext, Depends(get_current_user)]


# ---------------------------------------------------------------------------
# Pack endpoints
# ---------------------------------------------------------------------------


@router.get("/packs", response_model=list[PackResponse])
async def list_packs(
    tenant: TenantDep,
    service: Annotated[PackService, Depends(get_pack_service)],
) -> list[PackResponse]:
    """List policy packs for the current tenant."""
    return await service.list_packs(tenant)


@router.post("/packs", response_model=PackResponse, status_code=201)
async def create_pack(
    request: PackCreateRequest,
    tenant: TenantDep,
    service: Annotated[PackService, Depends(get_pack_service)],
) -> PackResponse:
    """Create a policy pack."""
    logger.info("POST /packs", tenant_id=str(tenant.tenant_id), pack_name=request.name)
    return await service.create_pack(
        tenant=tenant,
        name=request.name,
        authority=request.authority,
        description=request.description,
        status=request.status,
    )


@router.patch("/packs/{pack_id}", response_model=PackResponse)
async def update_pack(
    pack_id: uuid.UUID,
    request: PackUpdateRequest,
    tenant: TenantDep,
    service: Annotated[PackService, Depends(get_pack_service)],
) -> PackResponse:
    """Update a policy pack. Omitted fields are left unchanged."""
    return await service.update_pack(tenant, pack_id, request.model_dump(exclude_unset=True))


# ---------------------------------------------------------------------------
# Regulation endpoints
# ---------------------------------------------------------------------------


@router.get("/regulations", response_model=list[RegulationResponse])
async def list_regulations(
    tenant: TenantDep,
    service: Annotated[RegulationService, Depends(get_regulation_service)],
    pack_id: uuid.UUID | None = Query(default=None, description="Only regulations of this pack"),
) -> list[RegulationResponse]:
    """List regulations for the current tenant."""
    return await service.list_regulations(tenant, pack_id=pack_id)


@router.post("/regulations", response_model=RegulationResponse, status_code=201)
async def create_regulation(
    request: RegulationCreateRequest,
    tenant: TenantDep,
    service: Annotated[RegulationService, Depends(get_regulation_service)],
) -> RegulationResponse:
    """Record a regulation or guide section."""
    return await service.create_regulation(tenant, request.model_dump())


# ---------------------------------------------------------------------------
# Rule and version endpoints
# ---------------------------------------------------------------------------


@router.get("/rules", response_model=list[RuleResponse])
async def list_rules(
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
    pack_id: uuid.UUID | None = Query(default=None, description="Only rules of this pack"),
) -> list[RuleResponse]:
    """List rules with all of their versions."""
    return await service.list_rules(tenant, pack_id=pack_id)


@router.post("/rules", response_model=RuleResponse, status_code=201)
async def create_rule(
    request: RuleCreateRequest,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleResponse:
    """Create a rule in draft status together with its first draft version.

    Args:
        request: Rule and version 1 content.
        tenant: Tenant context from the gateway headers.
        service: Injected RuleService.

    Returns:
        The created rule with version 1.
    """
    logger.info("POST /rules", tenant_id=str(tenant.tenant_id), rule_name=request.name)
    return await service.create_rule(
        tenant=tenant,
        pack_id=request.pack_id,
        name=request.name,
        applies_to=request.applies_to,
        regulation_id=request.regulation_id,
        conditions=request.conditions,
        actions=request.actions,
        severity=request.severity,
        effective_date=request.effective_date,
        actor_id=tenant.user_id,
    )


@router.post("/rules/{rule_id}/versions", response_model=RuleVersionResponse, status_code=201)
async def create_version(
    rule_id: uuid.UUID,
    request: VersionCreateRequest,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleVersionResponse:
    """Add the next draft version to a rule."""
    return await service.create_version(
        tenant=tenant,
        rule_id=rule_id,
        conditions=request.conditions,
        actions=request.actions,
        severity=request.severity,
        change_note=request.change_note,
        effective_date=request.effective_date,
        actor_id=tenant.user_id,
    )


@router.post("/rules/{rule_id}/submit", response_model=RuleResponse)
async def submit_rule(
    rule_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleResponse:
    """Submit every draft version of a rule for review."""
    return await service.submit_rule(tenant, rule_id)


@router.patch("/versions/{version_id}", response_model=RuleVersionResponse)
async def update_version(
    version_id: uuid.UUID,
    request: VersionUpdateRequest,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleVersionResponse:
    """Edit a draft version. Versions past draft are immutable (409)."""
    return await service.update_version(tenant, version_id, request.model_dump(exclude_unset=True))


@router.post("/versions/{version_id}/approve", response_model=RuleVersionResponse)
async def approve_version(
    version_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleVersionResponse:
    """Approve a version under review."""
    return await service.approve_version(tenant, version_id, actor_id=tenant.user_id)


@router.post("/versions/{version_id}/activate", response_model=RuleResponse)
async def activate_version(
    version_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleResponse:
    """Activate an approved version, retiring the rule's previously active one.

    Args:
        version_id: The approved version to activate.
        tenant: Tenant context from the gateway headers.
        service: Injected RuleService.

    Returns:
        The rule with its updated versions.
    """
    logger.info("POST /versions/activate", tenant_id=str(tenant.tenant_id), version_id=str(version_id))
    return await service.activate_version(tenant, version_id)


@router.post("/versions/{version_id}/retire", response_model=RuleVersionResponse)
async def retire_version(
    version_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[RuleService, Depends(get_rule_service)],
) -> RuleVersionResponse:
    """Retire an active or approved version."""
    return await service.retire_version(tenant, version_id)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate_entity(
    request: EvaluateRequest,
    tenant: TenantDep,
    service: Annotated[EvaluationService, Depends(get_evaluation_service)],
) -> EvaluateResponse:
    """Evaluate every applicable active rule against one entity.

    The entity is given inline or loaded by ID. Returns only the findings this
    call created; an empty list means nothing new triggered.
    """
    if request.entity is not None:
        findings = await service.evaluate(tenant, request.entity_type, request.entity)
        entity_id = str(request.entity.get("id", request.entity_id or ""))
    else:
        entity_id = str(request.entity_id)
        findings = await service.evaluate_by_id(tenant, request.entity_type, entity_id)
    return EvaluateResponse(entity_type=request.entity_type, entity_id=entity_id, findings=findings)


# ---------------------------------------------------------------------------
# Impact simulation
# ---------------------------------------------------------------------------


@router.post("/impact/run", response_model=ImpactRunStartResponse, status_code=202)
async def start_impact_run(
    request: ImpactRunRequest,
    tenant: TenantDep,
    service: Annotated[ImpactSimulationService, Depends(get_impact_service)],
    scheduler: Annotated[ImpactRunScheduler | None, Depends(get_impact_scheduler)],
) -> ImpactRunStartResponse:
    """Start an impact simulation of a rule version. Poll GET /impact/{run_id} for the outcome."""
    logger.info(
        "POST /impact/run",
        tenant_id=str(tenant.tenant_id),
        rule_version_id=str(request.rule_version_id),
    )
    return await service.start_run(tenant, request.rule_version_id, actor_id=tenant.user_id, scheduler=scheduler)


@router.get("/impact/{run_id}", response_model=ImpactRunDetailResponse)
async def get_impact_run(
    run_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[ImpactSimulationService, Depends(get_impact_service)],
) -> ImpactRunDetailResponse:
    """Return an impact run and its first page of results, triggering entities first."""
    return await service.get_run(tenant, run_id)


@router.post("/impact/{run_id}/cancel", response_model=ImpactRunResponse)
async def cancel_impact_run(
    run_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[ImpactSimulationService, Depends(get_impact_service)],
    scheduler: Annotated[ImpactRunScheduler | None, Depends(get_impact_scheduler)],
) -> ImpactRunResponse:
    """Cancel a running impact run."""
    return await service.cancel_run(tenant, run_id, scheduler=scheduler)


# ---------------------------------------------------------------------------
# Findings and overrides
# ---------------------------------------------------------------------------


@router.get("/findings", response_model=list[FindingResponse])
async def list_findings(
    tenant: TenantDep,
    service: Annotated[FindingService, Depends(get_finding_service)],
    status: str | None = Query(default=None, description="open | in_progress | dismissed | waived"),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
) -> list[FindingResponse]:
    """List findings with their tasks, newest first."""
    return await service.list_findings(tenant, status=status, entity_type=entity_type, entity_id=entity_id)


@router.patch("/findings/{finding_id}", response_model=FindingResponse)
async def update_finding_status(
    finding_id: uuid.UUID,
    request: FindingStatusUpdateRequest,
    tenant: TenantDep,
    service: Annotated[FindingService, Depends(get_finding_service)],
) -> FindingResponse:
    """Move a finding to a new status."""
    return await service.update_status(tenant, finding_id, request.status)


@router.post("/findings/{finding_id}/override", response_model=OverrideResultResponse, status_code=201)
async def override_finding(
    finding_id: uuid.UUID,
    request: OverrideRequest,
    tenant: TenantDep,
    service: Annotated[FindingService, Depends(get_finding_service)],
) -> OverrideResultResponse:
    """Record an override decision; the finding's status follows the action.

    Args:
        finding_id: The finding being overridden.
        request: Action, reason and optional expiry.
        tenant: Tenant context from the gateway headers.
        service: Injected FindingService.

    Returns:
        The override record and the updated finding.
    """
    return await service.override(
        tenant=tenant,
        finding_id=finding_id,
        action=request.action,
        reason_code=request.reason_code,
        reason=request.reason,
        expires_at=request.expires_at,
        actor_id=tenant.user_id,
    )


@router.get("/findings/{finding_id}/overrides", response_model=list[OverrideResponse])
async def list_overrides(
    finding_id: uuid.UUID,
    tenant: TenantDep,
    service: Annotated[FindingService, Depends(get_finding_service)],
) -> list[OverrideResponse]:
    """Return a finding's override audit trail."""
    return await service.list_overrides(tenant, finding_id)


# ---------------------------------------------------------------------------
# Condition validation
# ---------------------------------------------------------------------------


@router.post("/conditions/validate", response_model=ConditionValidateResponse)
async def validate_conditions(
    request: ConditionValidateRequest,
    tenant: TenantDep,
) -> ConditionValidateResponse:
    """Check a condition tree before saving it on a version."""
    try:
        node = validate_condition(request.conditions)
    except InvalidConditionError as exc:
        return ConditionValidateResponse(valid=False, error=exc.message, path=exc.path)
    return ConditionValidateResponse(valid=True, fields=referenced_fields(node))
