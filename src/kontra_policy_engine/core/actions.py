"""Rule action directives: due-date resolution, validation, and planning.

A triggered rule version carries an ordered action list such as:

    [
        {"type": "set_due_date", "mode": "fixed", "value": "2026-03-31"},
        {"type": "create_finding", "title": "High risk loan", "severity": "high"},
        {"type": "create_task", "title": "Update reporting", "sla_days": 7,
         "required_artifacts": ["Borrower notice"]},
        {"type": "require_artifact", "items": ["Guide citation"]},
        {"type": "block_action", "action": "loan.fund", "reason": "Pending review"},
    ]

``plan_actions`` folds the list into one FindingDraft plus zero or more
TaskDrafts without touching storage; ActionApplier in core/services.py
persists the plan. Order matters: the last valid ``set_due_date`` wins.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

from kontra_policy_engine.common.errors import ValidationError

DEFAULT_FINDING_TITLE = "Compliance requirement triggered"
DEFAULT_TASK_TITLE = "Compliance task"
DEFAULT_SEVERITY = "medium"


class ActionType(str, Enum):
    SET_DUE_DATE = "set_due_date"
    CREATE_FINDING = "create_finding"
    CREATE_TASK = "create_task"
    REQUIRE_ARTIFACT = "require_artifact"
    BLOCK_ACTION = "block_action"


class DueDateMode(str, Enum):
    FIXED = "fixed"
    DAYS_FROM_NOW = "days_from_now"


@dataclass
class TaskDraft:
    title: str
    due_date: str | None
    required_artifacts: list[Any]
    notes: str | None = None


@dataclass
class FindingDraft:
    title: str = DEFAULT_FINDING_TITLE
    severity: str = DEFAULT_SEVERITY
    due_date: str | None = None
    required_artifacts: list[Any] = field(default_factory=list)
    blocks: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ActionPlan:
    """Everything a triggered version will write: one finding and its tasks."""

    finding: FindingDraft
    tasks: list[TaskDraft] = field(default_factory=list)


def today_utc() -> date:
    """Return the current UTC calendar date."""
    return datetime.now(UTC).date()


def _as_days(value: Any) -> int | None:
    """Coerce a day count; blank means 0, non-numeric means None."""
    if value is None or value == "" or value is False:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def compute_due_date(action: Any, today: date | None = None) -> str | None:
    """Resolve a ``set_due_date`` action to an ISO date string.

    ``fixed`` returns ``value`` verbatim, ``days_from_now`` returns today plus
    ``value`` days. Any other action type or mode resolves to None.

    Args:
        action: One action directive.
        today: Reference date; defaults to the current UTC date.

    Returns:
        The ISO date, or None.
    """
    if not isinstance(action, Mapping) or action.get("type") != ActionType.SET_DUE_DATE.value:
        return None

    mode = action.get("mode")
    if mode == DueDateMode.FIXED.value:
        return action.get("value")
    if mode == DueDateMode.DAYS_FROM_NOW.value:
        days = _as_days(action.get("value"))
        if days is None:
            return None
        return ((today or today_utc()) + timedelta(days=days)).isoformat()
    return None


def plan_actions(
    actions: list[Any] | None,
    severity_default: str | None = None,
    today: date | None = None,
) -> ActionPlan:
    """Fold an ordered action list into a finding draft and task drafts.

    Args:
        actions: The version's action list. Unknown directives are ignored.
        severity_default: The version's severity, used unless a
            ``create_finding`` action overrides it.
        today: Reference date for relative due dates.

    Returns:
        The ActionPlan.
    """
    today = today or today_utc()
    finding = FindingDraft(severity=severity_default or DEFAULT_SEVERITY)
    pending_tasks: list[Mapping[str, Any]] = []

    for action in actions or []:
        if not isinstance(action, Mapping):
            continue
        kind = action.get("type")
        if kind == ActionType.SET_DUE_DATE:
            finding.due_date = compute_due_date(action, today) or finding.due_date
        elif kind == ActionType.CREATE_FINDING:
            if action.get("title"):
                finding.title = action["title"]
            if action.get("severity"):
                finding.severity = action["severity"]
        elif kind == ActionType.CREATE_TASK:
            pending_tasks.append(action)
        elif kind == ActionType.REQUIRE_ARTIFACT:
            finding.required_artifacts.extend(action.get("items") or [])
        elif kind == ActionType.BLOCK_ACTION:
            finding.blocks.append(dict(action))

    # Tasks are built after the walk so they see every required artifact.
    tasks = [_task_draft(task, finding, today) for task in pending_tasks]
    return ActionPlan(finding=finding, tasks=tasks)


def _task_draft(task: Mapping[str, Any], finding: FindingDraft, today: date) -> TaskDraft:
    due_date = finding.due_date
    sla_days = _as_days(task.get("sla_days"))
    if sla_days:
        due_date = (today + timedelta(days=sla_days)).isoformat()

    own_artifacts = task.get("required_artifacts")
    return TaskDraft(
        title=task.get("title") or DEFAULT_TASK_TITLE,
        due_date=due_date,
        required_artifacts=list(own_artifacts) if own_artifacts is not None else list(finding.required_artifacts),
        notes=task.get("notes"),
    )


def first_due_date(actions: list[Any] | None, today: date | None = None) -> str | None:
    """Resolve the first ``set_due_date`` action, as the impact projection does."""
    for action in actions or []:
        if isinstance(action, Mapping) and action.get("type") == ActionType.SET_DUE_DATE.value:
            return compute_due_date(action, today)
    return None


# ---------------------------------------------------------------------------
# Authoring validation
# ---------------------------------------------------------------------------


def validate_actions(actions: Any) -> list[dict[str, Any]]:
    """Check an authored action list, raising on the first malformed directive.

    Raises:
        ValidationError: With ``field`` pointing at the offending entry.
    """
    if not isinstance(actions, list):
        raise ValidationError("actions must be a list", field="actions")

    for index, action in enumerate(actions):
        where = f"actions[{index}]"
        if not isinstance(action, Mapping):
            raise ValidationError("action must be an object", field=where)
        try:
            kind = ActionType(action.get("type"))
        except ValueError:
            raise ValidationError(f"unknown action type {action.get('type')!r}", field=f"{where}.type") from None

        if kind is ActionType.SET_DUE_DATE:
            _validate_due_date(action, where)
        elif kind is ActionType.CREATE_FINDING:
            for key in ("title", "severity"):
                if action.get(key) is not None and not isinstance(action[key], str):
                    raise ValidationError(f"{key} must be a string", field=f"{where}.{key}")
        elif kind is ActionType.CREATE_TASK:
            if action.get("sla_days") is not None and _as_days(action["sla_days"]) is None:
                raise ValidationError("sla_days must be a number", field=f"{where}.sla_days")
            artifacts = action.get("required_artifacts")
            if artifacts is not None and not isinstance(artifacts, list):
                raise ValidationError("required_artifacts must be a list", field=f"{where}.required_artifacts")
        elif kind is ActionType.REQUIRE_ARTIFACT:
            if not isinstance(action.get("items"), list):
                raise ValidationError("items must be a list", field=f"{where}.items")

    return [dict(action) for action in actions]


def _validate_due_date(action: Mapping[str, Any], where: str) -> None:
    try:
        mode = DueDateMode(action.get("mode"))
    except ValueError:
        raise ValidationError(f"unknown due date mode {action.get('mode')!r}", field=f"{where}.mode") from None

    value = action.get("value")
    if mode is DueDateMode.FIXED:
        try:
            date.fromisoformat(value)
        except (TypeError, ValueError):
            raise ValidationError("fixed due date must be an ISO date", field=f"{where}.value") from None
    elif _as_days(value) is None:
        raise ValidationError("days_from_now value must be a number", field=f"{where}.value")
