"""Pydantic request and response schemas for the policy engine API.

All API inputs and outputs use Pydantic models, never raw dicts.
Schemas are grouped by resource type.

Resources:
- PolicyPack — pack CRUD
- Regulation — regulation CRUD
- PolicyRule / PolicyRuleVersion — authoring and version lifecycle
- Evaluation — run active rules against one entity
- ComplianceFinding / ComplianceOverride — findings and the override audit trail
- PolicyImpactRun — impact simulation runs and results
- Condition validation
"""

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# PolicyPack schemas
# ---------------------------------------------------------------------------


class PackCreateRequest(BaseModel):
    """Request body for creating a policy pack."""

    name: str = Field(description="Pack name, e.g. 'Freddie Mac Servicing Guide'", min_length=1, max_length=255)
    authority: str = Field(description="Issuing authority, e.g. 'FHLMC'", min_length=1, max_length=255)
    description: str | None = Field(default=None, description="Optional free-text description")
    status: str = Field(default="active", description="Pack status: active | retired")


class PackUpdateRequest(BaseModel):
    """Partial update for a policy pack. Omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    authority: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: str | None = Field(default=None, description="Pack status: active | retired")


class PackResponse(BaseModel):
    """Response schema for a policy pack."""

    id: uuid.UUID = Field(description="Pack UUID")
    tenant_id: uuid.UUID = Field(description="Owning tenant UUID")
    name: str
    authority: str
    description: str | None
    status: str
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Regulation schemas
# ---------------------------------------------------------------------------


class RegulationCreateRequest(BaseModel):
    """Request body for recording a regulation or guide section."""

    pack_id: uuid.UUID | None = Field(default=None, description="Pack this regulation belongs to")
    authority: str = Field(min_length=1, max_length=255)
    title: str = Field(min_length=1, max_length=500)
    citation: str | None = Field(default=None, description="Citation, e.g. 'Guide 9203.7'")
    source_url: str | None = None
    effective_date: date | None = None
    tags: list[str] = Field(default_factory=list)
    raw_text: str | None = None
    summary: str | None = None
    status: str = Field(default="active", description="active | retired")


class RegulationResponse(BaseModel):
    """Response schema for a regulation."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    pack_id: uuid.UUID | None
    authority: str
    title: str
    citation: str | None
    source_url: str | None
    effective_date: date | None
    tags: list[str]
    raw_text: str | None
    summary: str | None
    status: str
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# PolicyRule / PolicyRuleVersion schemas
# ---------------------------------------------------------------------------


class RuleCreateRequest(BaseModel):
    """Request body for creating a rule together with its first draft version."""

    pack_id: uuid.UUID = Field(description="Owning pack UUID")
    name: str = Field(min_length=1, max_length=255)
    applies_to: str | None = Field(
        default="loan",
        description="Entity type this rule evaluates; null applies to every entity type",
    )
    regulation_id: uuid.UUID | None = Field(default=None, description="Cited regulation UUID")
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        description="Condition tree, e.g. {'all': [{'field': 'loan.risk_rating', 'op': '>=', 'value': 7}]}",
    )
    actions: list[dict[str, Any]] = Field(default_factory=list, description="Ordered action directives")
    severity: str = Field(default="medium", description="Default finding severity")
    effective_date: date | None = None


class VersionCreateRequest(BaseModel):
    """Request body for adding a new draft version to a rule."""

    conditions: dict[str, Any] = Field(default_factory=dict)
    actions: list[dict[str, Any]] = Field(default_factory=list)
    severity: str = "medium"
    change_note: str | None = None
    effective_date: date | None = None


class VersionUpdateRequest(BaseModel):
    """Partial update of a draft version. Omitted fields are left unchanged."""

    conditions: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    severity: str | None = None
    change_note: str | None = None
    effective_date: date | None = None


class RuleVersionResponse(BaseModel):
    """Response schema for one rule version."""

    id: uuid.UUID
    rule_id: uuid.UUID
    version: int = Field(description="Monotonic version number within the rule")
    status: str = Field(description="draft | in_review | approved | active | retired")
    conditions: dict[str, Any]
    actions: list[Any]
    severity: str
    change_note: str | None
    effective_date: date | None
    created_by: uuid.UUID | None
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RuleResponse(BaseModel):
    """Response schema for a rule with all of its versions."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    pack_id: uuid.UUID
    regulation_id: uuid.UUID | None
    name: str
    applies_to: str | None
    current_version_id: uuid.UUID | None = Field(description="The active version, if any")
    status: str = Field(description="draft | in_review | active")
    versions: list[RuleVersionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Findings and overrides
# ---------------------------------------------------------------------------


class TaskResponse(BaseModel):
    """Response schema for a compliance task."""

    id: uuid.UUID
    finding_id: uuid.UUID
    title: str
    status: str
    due_date: date | None
    required_artifacts: list[Any]
    notes: str | None


class FindingResponse(BaseModel):
    """Response schema for a compliance finding with its tasks."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    entity_type: str
    entity_id: str
    pack_id: uuid.UUID | None
    rule_id: uuid.UUID
    rule_version_id: uuid.UUID
    status: str = Field(description="open | in_progress | dismissed | waived")
    severity: str
    title: str
    due_date: date | None
    details: dict[str, Any] = Field(description="Rule name, inputs snapshot, conditions, actions, artifacts, blocks")
    tasks: list[TaskResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class FindingStatusUpdateRequest(BaseModel):
    """Request body for moving a finding to a new status."""

    status: str = Field(description="in_progress | dismissed | waived")


class OverrideRequest(BaseModel):
    """Request body for recording an override decision against a finding."""

    action: str = Field(min_length=1, description="dismiss | waive | any other value (moves to in_progress)")
    reason_code: str | None = Field(default=None, max_length=100)
    reason: str | None = None
    expires_at: datetime | None = Field(default=None, description="When the override lapses")


class OverrideResponse(BaseModel):
    """Response schema for an immutable override record."""

    id: uuid.UUID
    finding_id: uuid.UUID
    action: str
    reason_code: str | None
    reason: str | None
    approved_by: uuid.UUID | None
    approved_at: datetime
    expires_at: datetime | None


class OverrideResultResponse(BaseModel):
    """The recorded override and the finding as projected by it."""

    override: OverrideResponse
    finding: FindingResponse


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class EvaluateRequest(BaseModel):
    """Evaluate active rules against an entity, given inline or by ID."""

    entity_type: str = Field(default="loan", description="Entity type, e.g. 'loan'")
    entity_id: str | None = Field(default=None, description="Load the entity from the entity source")
    entity: dict[str, Any] | None = Field(default=None, description="Inline entity record; must carry 'id'")

    @model_validator(mode="after")
    def _require_entity(self) -> "EvaluateRequest":
        if self.entity is None and not self.entity_id:
            raise ValueError("either entity_id or entity is required")
        return self


class EvaluateResponse(BaseModel):
    """Findings created by one evaluation. Empty when nothing new triggered."""

    entity_type: str
    entity_id: str
    findings: list[FindingResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Impact simulation
# ---------------------------------------------------------------------------


class ImpactRunRequest(BaseModel):
    """Request body for starting an impact simulation."""

    rule_version_id: uuid.UUID = Field(description="Candidate rule version to simulate")


class ImpactRunStartResponse(BaseModel):
    """Returned immediately when a run is accepted."""

    run_id: uuid.UUID
    status: str


class ImpactRunResponse(BaseModel):
    """Response schema for an impact run."""

    id: uuid.UUID
    tenant_id: uuid.UUID
    pack_id: uuid.UUID | None
    rule_version_id: uuid.UUID
    status: str = Field(description="running | complete | failed | cancelled")
    summary: dict[str, Any] | None = Field(description="total_entities, would_trigger, no_trigger, severity")
    error: str | None
    created_by: uuid.UUID | None
    created_at: datetime
    completed_at: datetime | None


class ImpactResultResponse(BaseModel):
    """Projected outcome of the candidate version for one entity."""

    entity_type: str
    entity_id: str
    would_trigger: bool
    severity: str | None
    due_date: date | None
    details: dict[str, Any]


class ImpactRunDetailResponse(BaseModel):
    """A run and its first page of results, triggering entities first."""

    run: ImpactRunResponse
    results: list[ImpactResultResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Condition validation
# ---------------------------------------------------------------------------


class ConditionValidateRequest(BaseModel):
    """A condition tree to check before saving it on a version."""

    conditions: Any = Field(description="Condition tree JSON")


class ConditionValidateResponse(BaseModel):
    """Validation outcome for a condition tree."""

    valid: bool
    fields: list[str] = Field(default_factory=list, description="Field paths the tree reads")
    error: str | None = None
    path: str | None = Field(default=None, description="JSON path of the first malformed node")
