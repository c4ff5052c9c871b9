"""Tests for rule action planning and validation."""

from datetime import date

import pytest

from kontra_policy_engine.common.errors import ValidationError
from kontra_policy_engine.core.actions import (
    DEFAULT_FINDING_TITLE,
    DEFAULT_TASK_TITLE,
    compute_due_date,
    first_due_date,
    plan_actions,
    validate_actions,
)

TODAY = date(2026, 1, 10)


class TestComputeDueDate:
    """Tests for set_due_date resolution."""

    def test_fixed_returns_value_verbatim(self) -> None:
        action = {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"}
        assert compute_due_date(action, TODAY) == "2026-03-31"

    def test_days_from_now(self) -> None:
        action = {"type": "set_due_date", "mode": "days_from_now", "value": 30}
        assert compute_due_date(action, TODAY) == "2026-02-09"

    def test_days_from_now_accepts_numeric_text(self) -> None:
        action = {"type": "set_due_date", "mode": "days_from_now", "value": "5"}
        assert compute_due_date(action, TODAY) == "2026-01-15"

    def test_blank_days_means_today(self) -> None:
        action = {"type": "set_due_date", "mode": "days_from_now", "value": None}
        assert compute_due_date(action, TODAY) == "2026-01-10"

    @pytest.mark.parametrize(
        "action",
        [
            {"type": "create_task", "mode": "fixed", "value": "2026-03-31"},
            {"type": "set_due_date", "mode": "business_days", "value": 3},
            {"type": "set_due_date", "mode": "days_from_now", "value": "soon"},
            "set_due_date",
        ],
    )
    def test_unresolvable_is_none(self, action: object) -> None:
        assert compute_due_date(action, TODAY) is None


class TestPlanActions:
    """Tests for folding an action list into a finding and tasks."""

    def test_empty_actions_use_defaults(self) -> None:
        plan = plan_actions([], severity_default="high", today=TODAY)

        assert plan.finding.title == DEFAULT_FINDING_TITLE
        assert plan.finding.severity == "high"
        assert plan.finding.due_date is None
        assert plan.tasks == []

    def test_create_finding_overrides_title_and_severity(self) -> None:
        plan = plan_actions(
            [{"type": "create_finding", "title": "High risk loan", "severity": "critical"}],
            severity_default="medium",
            today=TODAY,
        )

        assert plan.finding.title == "High risk loan"
        assert plan.finding.severity == "critical"

    def test_last_due_date_wins(self) -> None:
        plan = plan_actions(
            [
                {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
                {"type": "set_due_date", "mode": "days_from_now", "value": 7},
            ],
            today=TODAY,
        )
        assert plan.finding.due_date == "2026-01-17"

    def test_unresolvable_due_date_keeps_previous(self) -> None:
        plan = plan_actions(
            [
                {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
                {"type": "set_due_date", "mode": "days_from_now", "value": "never"},
            ],
            today=TODAY,
        )
        assert plan.finding.due_date == "2026-03-31"

    def test_task_inherits_finding_due_date_and_artifacts(self) -> None:
        plan = plan_actions(
            [
                {"type": "create_task", "title": "Collect notice"},
                {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
                {"type": "require_artifact", "items": ["Borrower notice"]},
            ],
            today=TODAY,
        )

        assert len(plan.tasks) == 1
        assert plan.tasks[0].title == "Collect notice"
        assert plan.tasks[0].due_date == "2026-03-31"
        assert plan.tasks[0].required_artifacts == ["Borrower notice"]

    def test_task_sla_days_and_own_artifacts(self) -> None:
        plan = plan_actions(
            [
                {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
                {"type": "require_artifact", "items": ["Guide citation"]},
                {"type": "create_task", "sla_days": 3, "required_artifacts": ["Appraisal"], "notes": "Rush"},
            ],
            today=TODAY,
        )

        task = plan.tasks[0]
        assert task.title == DEFAULT_TASK_TITLE
        assert task.due_date == "2026-01-13"
        assert task.required_artifacts == ["Appraisal"]
        assert task.notes == "Rush"

    def test_require_artifact_and_block_action_collected(self) -> None:
        plan = plan_actions(
            [
                {"type": "require_artifact", "items": ["A"]},
                {"type": "require_artifact", "items": ["B", "C"]},
                {"type": "block_action", "action": "loan.fund", "reason": "Pending review"},
            ],
            today=TODAY,
        )

        assert plan.finding.required_artifacts == ["A", "B", "C"]
        assert plan.finding.blocks == [{"type": "block_action", "action": "loan.fund", "reason": "Pending review"}]

    def test_unknown_directives_ignored(self) -> None:
        plan = plan_actions([{"type": "notify"}, 42, None], today=TODAY)
        assert plan.tasks == []
        assert plan.finding.title == DEFAULT_FINDING_TITLE


class TestFirstDueDate:
    """Tests for the impact projection's due date."""

    def test_first_set_due_date_used(self) -> None:
        actions = [
            {"type": "create_finding"},
            {"type": "set_due_date", "mode": "days_from_now", "value": 1},
            {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
        ]
        assert first_due_date(actions, TODAY) == "2026-01-11"

    def test_no_due_date(self) -> None:
        assert first_due_date([{"type": "create_task"}], TODAY) is None
        assert first_due_date(None, TODAY) is None


class TestValidateActions:
    """Tests for authoring-time validation."""

    def test_valid_list_returns_copies(self) -> None:
        actions = [
            {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
            {"type": "create_finding", "title": "T", "severity": "low"},
            {"type": "create_task", "sla_days": 7, "required_artifacts": []},
            {"type": "require_artifact", "items": ["X"]},
            {"type": "block_action", "action": "loan.fund"},
        ]

        validated = validate_actions(actions)

        assert validated == actions
        assert validated[0] is not actions[0]

    @pytest.mark.parametrize(
        ("actions", "field"),
        [
            ({"type": "create_task"}, "actions"),
            (["create_task"], "actions[0]"),
            ([{"type": "notify"}], "actions[0].type"),
            ([{"type": "set_due_date", "mode": "weekly", "value": 1}], "actions[0].mode"),
            ([{"type": "set_due_date", "mode": "fixed", "value": "31/03/2026"}], "actions[0].value"),
            ([{"type": "set_due_date", "mode": "days_from_now", "value": "x"}], "actions[0].value"),
            ([{"type": "create_finding", "title": 5}], "actions[0].title"),
            ([{"type": "create_task", "sla_days": "week"}], "actions[0].sla_days"),
            ([{"type": "create_task", "required_artifacts": "A"}], "actions[0].required_artifacts"),
            ([{"type": "block_action"}, {"type": "require_artifact"}], "actions[1].items"),
        ],
    )
    def test_invalid_actions(self, actions: object, field: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_actions(actions)
        assert exc_info.value.field == field
