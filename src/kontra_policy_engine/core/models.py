"""SQLAlchemy ORM models for the policy engine.

All models use the `pol_` table prefix and extend TenantModel for automatic
tenant_id, id (UUID), created_at, and updated_at fields.

Models:
- PolicyPack          — Named grouping of rules under a regulatory authority
- Regulation          — Citation / source document a rule may reference
- PolicyRule          — A named compliance requirement with versioned logic
- PolicyRuleVersion   — Condition/action snapshot, immutable once approved
- ComplianceFinding   — A rule version matched a specific entity
- ComplianceTask      — Follow-up work item spawned from a finding
- ComplianceOverride  — APPEND-ONLY human decision against a finding
- PolicyImpactRun     — One dry-run of a candidate version over a population
- PolicyImpactResult  — Per-entity projection of an impact run

Two partial unique indexes carry the engine's storage invariants:
- uq_pol_rule_versions_one_active: at most one active version per rule
- uq_pol_findings_open: at most one open/in_progress finding per
  (tenant, entity, rule version)

Nothing here is ever hard-deleted; records move through status values.
"""

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kontra_policy_engine.common.database import JSONType, TenantModel

# Rule version lifecycle
VERSION_DRAFT = "draft"
VERSION_IN_REVIEW = "in_review"
VERSION_APPROVED = "approved"
VERSION_ACTIVE = "active"
VERSION_RETIRED = "retired"

# Rule status
RULE_DRAFT = "draft"
RULE_IN_REVIEW = "in_review"
RULE_ACTIVE = "active"

# Finding lifecycle
FINDING_OPEN = "open"
FINDING_IN_PROGRESS = "in_progress"
FINDING_DISMISSED = "dismissed"
FINDING_WAIVED = "waived"
FINDING_NON_TERMINAL = (FINDING_OPEN, FINDING_IN_PROGRESS)

# Impact run lifecycle
RUN_RUNNING = "running"
RUN_COMPLETE = "complete"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"


class PolicyPack(TenantModel):
    """Named grouping of rules published by one regulatory authority.

    Attributes:
        name: Pack name, e.g. "Freddie Mac Servicing Guide".
        authority: Issuing authority, e.g. "FHLMC".
        description: Optional free text.
        status: active | retired.
    """

    __tablename__ = "pol_policy_packs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    authority: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active", index=True)


class Regulation(TenantModel):
    """A regulation or guide section that rules cite."""

    __tablename__ = "pol_regulations"

    pack_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("pol_policy_packs.id"),
        nullable=True,
        index=True,
    )
    authority: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    citation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")


class PolicyRule(TenantModel):
    """A named compliance requirement.

    The rule's logic lives in its versions. ``current_version_id`` points at
    the active version once one has been activated.

    Attributes:
        pack_id: Owning PolicyPack.
        regulation_id: Optional cited Regulation.
        name: Human-readable requirement name.
        applies_to: Entity type the rule evaluates (e.g. "loan"). NULL applies to every type.
        current_version_id: The active PolicyRuleVersion, if any.
        status: draft | in_review | active.
    """

    __tablename__ = "pol_policy_rules"

    pack_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("pol_policy_packs.id"), nullable=False, index=True)
    regulation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("pol_regulations.id"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applies_to: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    current_version_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=RULE_DRAFT, index=True)

    versions: Mapped[list["PolicyRuleVersion"]] = relationship(
        back_populates="rule",
        order_by="PolicyRuleVersion.version",
        lazy="selectin",
    )


class PolicyRuleVersion(TenantModel):
    """One version of a rule's condition tree and action list.

    Editable only while draft. Status moves draft → in_review → approved →
    active → retired; activation retires the previously active version in the
    same transaction.
    """

    __tablename__ = "pol_rule_versions"

    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("pol_policy_rules.id"), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, comment="Monotonic per rule, starting at 1")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=VERSION_DRAFT, index=True)
    conditions: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    actions: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    severity: Mapped[str] = mapped_column(String(30), nullable=False, default="medium")
    change_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    rule: Mapped[PolicyRule] = relationship(back_populates="versions", lazy="selectin")

    __table_args__ = (
        Index("uq_pol_rule_versions_number", "rule_id", "version", unique=True),
        Index(
            "uq_pol_rule_versions_one_active",
            "rule_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class ComplianceFinding(TenantModel):
    """Result of a rule version matching one entity.

    ``details`` holds the evidence snapshot written by the action applier:
    rule name, inputs snapshot, conditions, actions, required artifacts and
    advisory blocks.
    """

    __tablename__ = "pol_compliance_findings"

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    pack_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("pol_policy_rules.id"), nullable=False)
    rule_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pol_rule_versions.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=FINDING_OPEN, index=True)
    severity: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    tasks: Mapped[list["ComplianceTask"]] = relationship(
        back_populates="finding",
        order_by="ComplianceTask.created_at",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_pol_findings_entity", "tenant_id", "entity_type", "entity_id"),
        Index(
            "uq_pol_findings_open",
            "tenant_id",
            "entity_type",
            "entity_id",
            "rule_version_id",
            unique=True,
            postgresql_where=text("status IN ('open', 'in_progress')"),
            sqlite_where=text("status IN ('open', 'in_progress')"),
        ),
    )


class ComplianceTask(TenantModel):
    """Follow-up work item attached to a finding."""

    __tablename__ = "pol_compliance_tasks"

    finding_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pol_compliance_findings.id"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="open")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    required_artifacts: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    finding: Mapped[ComplianceFinding] = relationship(back_populates="tasks")


class ComplianceOverride(TenantModel):
    """Immutable record of a human decision against a finding.

    This table has NO UPDATE operations. The finding's status is the only
    projection an override changes.
    """

    __tablename__ = "pol_compliance_overrides"

    finding_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pol_compliance_findings.id"),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False, comment="dismiss | waive | any other value")
    reason_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PolicyImpactRun(TenantModel):
    """One simulation of a candidate rule version over a tenant's entities.

    Attributes:
        status: running | complete | failed | cancelled.
        summary: {total_entities, would_trigger, no_trigger, severity} once complete.
        error: Failure message when status is failed.
    """

    __tablename__ = "pol_impact_runs"

    pack_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    rule_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pol_rule_versions.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=RUN_RUNNING, index=True)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PolicyImpactResult(TenantModel):
    """Projection for one entity of an impact run. Never becomes a finding."""

    __tablename__ = "pol_impact_results"

    impact_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("pol_impact_runs.id"),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    would_trigger: Mapped[bool] = mapped_column(Boolean, nullable=False)
    severity: Mapped[str | None] = mapped_column(String(30), nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
