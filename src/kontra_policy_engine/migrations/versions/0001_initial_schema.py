"""Initial policy engine schema.

Revision ID: 0001
Revises:
Create Date: 2026-01-05
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False, comment="Owning tenant (organization) UUID"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _create_table(name: str, *columns: sa.Column) -> None:
    op.create_table(name, *_base_columns(), *columns)
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"])


def upgrade() -> None:
    _create_table(
        "pol_policy_packs",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("authority", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
    )
    op.create_index("ix_pol_policy_packs_status", "pol_policy_packs", ["status"])

    _create_table(
        "pol_regulations",
        sa.Column("pack_id", sa.Uuid(), sa.ForeignKey("pol_policy_packs.id"), nullable=True),
        sa.Column("authority", sa.String(255), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("citation", sa.String(255), nullable=True),
        sa.Column("source_url", sa.String(1000), nullable=True),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("tags", JSONType, nullable=False),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
    )
    op.create_index("ix_pol_regulations_pack_id", "pol_regulations", ["pack_id"])

    _create_table(
        "pol_policy_rules",
        sa.Column("pack_id", sa.Uuid(), sa.ForeignKey("pol_policy_packs.id"), nullable=False),
        sa.Column("regulation_id", sa.Uuid(), sa.ForeignKey("pol_regulations.id"), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("applies_to", sa.String(50), nullable=True),
        sa.Column("current_version_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
    )
    op.create_index("ix_pol_policy_rules_pack_id", "pol_policy_rules", ["pack_id"])
    op.create_index("ix_pol_policy_rules_applies_to", "pol_policy_rules", ["applies_to"])
    op.create_index("ix_pol_policy_rules_status", "pol_policy_rules", ["status"])

    _create_table(
        "pol_rule_versions",
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("pol_policy_rules.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, comment="Monotonic per rule, starting at 1"),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("conditions", JSONType, nullable=False),
        sa.Column("actions", JSONType, nullable=False),
        sa.Column("severity", sa.String(30), nullable=False),
        sa.Column("change_note", sa.Text(), nullable=True),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pol_rule_versions_rule_id", "pol_rule_versions", ["rule_id"])
    op.create_index("ix_pol_rule_versions_status", "pol_rule_versions", ["status"])
    op.create_index("uq_pol_rule_versions_number", "pol_rule_versions", ["rule_id", "version"], unique=True)
    op.create_index(
        "uq_pol_rule_versions_one_active",
        "pol_rule_versions",
        ["rule_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    _create_table(
        "pol_compliance_findings",
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("pack_id", sa.Uuid(), nullable=True),
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("pol_policy_rules.id"), nullable=False),
        sa.Column("rule_version_id", sa.Uuid(), sa.ForeignKey("pol_rule_versions.id"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(30), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("details", JSONType, nullable=False),
    )
    op.create_index(
        "ix_pol_compliance_findings_rule_version_id",
        "pol_compliance_findings",
        ["rule_version_id"],
    )
    op.create_index("ix_pol_compliance_findings_status", "pol_compliance_findings", ["status"])
    op.create_index(
        "ix_pol_findings_entity",
        "pol_compliance_findings",
        ["tenant_id", "entity_type", "entity_id"],
    )
    op.create_index(
        "uq_pol_findings_open",
        "pol_compliance_findings",
        ["tenant_id", "entity_type", "entity_id", "rule_version_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'in_progress')"),
        sqlite_where=sa.text("status IN ('open', 'in_progress')"),
    )

    _create_table(
        "pol_compliance_tasks",
        sa.Column("finding_id", sa.Uuid(), sa.ForeignKey("pol_compliance_findings.id"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("required_artifacts", JSONType, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_pol_compliance_tasks_finding_id", "pol_compliance_tasks", ["finding_id"])

    _create_table(
        "pol_compliance_overrides",
        sa.Column("finding_id", sa.Uuid(), sa.ForeignKey("pol_compliance_findings.id"), nullable=False),
        sa.Column("action", sa.String(50), nullable=False, comment="dismiss | waive | any other value"),
        sa.Column("reason_code", sa.String(100), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pol_compliance_overrides_finding_id", "pol_compliance_overrides", ["finding_id"])

    _create_table(
        "pol_impact_runs",
        sa.Column("pack_id", sa.Uuid(), nullable=True),
        sa.Column("rule_version_id", sa.Uuid(), sa.ForeignKey("pol_rule_versions.id"), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("summary", JSONType, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pol_impact_runs_rule_version_id", "pol_impact_runs", ["rule_version_id"])
    op.create_index("ix_pol_impact_runs_status", "pol_impact_runs", ["status"])

    _create_table(
        "pol_impact_results",
        sa.Column("impact_run_id", sa.Uuid(), sa.ForeignKey("pol_impact_runs.id"), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("would_trigger", sa.Boolean(), nullable=False),
        sa.Column("severity", sa.String(30), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("details", JSONType, nullable=False),
    )
    op.create_index("ix_pol_impact_results_impact_run_id", "pol_impact_results", ["impact_run_id"])


def downgrade() -> None:
    for table in (
        "pol_impact_results",
        "pol_impact_runs",
        "pol_compliance_overrides",
        "pol_compliance_tasks",
        "pol_compliance_findings",
        "pol_rule_versions",
        "pol_policy_rules",
        "pol_regulations",
        "pol_policy_packs",
    ):
        op.drop_table(table)
