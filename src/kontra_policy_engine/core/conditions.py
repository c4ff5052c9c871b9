"""Condition tree parsing and evaluation.

Rule conditions are authored as JSON trees:

    {"all": [<condition>, ...]}                          every child true; [] is true
    {"any": [<condition>, ...]}                          some child true; [] is false
    {"field": "loan.risk_rating", "op": ">", "value": 6}

A tree is parsed once into a tagged union of frozen dataclasses
(AllCondition, AnyCondition, LeafCondition, InvalidCondition) and then
evaluated with ``evaluate``. Parsing and evaluation hold no shared state, so
both are safe to call from any number of threads or tasks.

How malformed nodes (unknown operator, non-list ``in`` value, missing field
path, wrong node shape) are handled is governed by ConditionFailurePolicy:
``reject`` raises InvalidConditionError at parse time, ``never_trigger``
turns the node into an InvalidCondition that evaluates to False, and
``always_trigger`` into one that evaluates to True.

An empty condition object ``{}`` parses as ``{"any": []}`` and never triggers.
"""

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from kontra_policy_engine.common.errors import InvalidConditionError


class ConditionFailurePolicy(str, Enum):
    """Treatment of malformed condition nodes."""

    REJECT = "reject"
    NEVER_TRIGGER = "never_trigger"
    ALWAYS_TRIGGER = "always_trigger"


class Operator(str, Enum):
    """Leaf comparison operators."""

    EXISTS = "exists"
    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "in"
    CONTAINS = "contains"


_NUMERIC_OPERATORS = frozenset({Operator.GT, Operator.GTE, Operator.LT, Operator.LTE})


class _Undefined:
    """Marker for a field path that does not resolve. Distinct from None (null)."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


@dataclass(frozen=True, slots=True)
class LeafCondition:
    field: str
    op: Operator
    value: Any = None


@dataclass(frozen=True, slots=True)
class AllCondition:
    children: tuple["ConditionNode", ...]


@dataclass(frozen=True, slots=True)
class AnyCondition:
    children: tuple["ConditionNode", ...]


@dataclass(frozen=True, slots=True)
class InvalidCondition:
    """A malformed node kept under a non-rejecting policy."""

    reason: str
    outcome: bool


ConditionNode = Union[AllCondition, AnyCondition, LeafCondition, InvalidCondition]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_condition(
    raw: Any,
    policy: ConditionFailurePolicy = ConditionFailurePolicy.REJECT,
    path: str = "$",
) -> ConditionNode:
    """Parse a JSON condition tree into a ConditionNode.

    Args:
        raw: The decoded JSON condition.
        policy: How malformed nodes are treated.
        path: JSON path of ``raw`` inside the whole tree, used in error messages.

    Returns:
        The parsed tree.

    Raises:
        InvalidConditionError: If a node is malformed and policy is REJECT.
    """
    if not isinstance(raw, Mapping):
        return _invalid("condition must be an object", policy, path)

    if not raw:
        return AnyCondition(children=())

    if "all" in raw:
        return _parse_group(raw["all"], "all", policy, path)
    if "any" in raw:
        return _parse_group(raw["any"], "any", policy, path)

    field = raw.get("field")
    if not isinstance(field, str) or not field:
        return _invalid("condition must define 'all', 'any' or a non-empty 'field'", policy, path)

    try:
        op = Operator(raw.get("op"))
    except ValueError:
        return _invalid(f"unknown operator {raw.get('op')!r}", policy, path)

    value = raw.get("value")
    if op is Operator.IN and not isinstance(value, list):
        return _invalid("operator 'in' requires a list value", policy, path)

    return LeafCondition(field=field, op=op, value=value)


def _parse_group(children: Any, key: str, policy: ConditionFailurePolicy, path: str) -> ConditionNode:
    if not isinstance(children, list):
        return _invalid(f"'{key}' must be a list of conditions", policy, path)
    parsed = tuple(
        parse_condition(child, policy, f"{path}.{key}[{index}]") for index, child in enumerate(children)
    )
    return AllCondition(children=parsed) if key == "all" else AnyCondition(children=parsed)


def _invalid(reason: str, policy: ConditionFailurePolicy, path: str) -> InvalidCondition:
    if policy is ConditionFailurePolicy.REJECT:
        raise InvalidConditionError(f"Invalid condition at {path}: {reason}", path=path)
    return InvalidCondition(reason=f"{path}: {reason}", outcome=policy is ConditionFailurePolicy.ALWAYS_TRIGGER)


def validate_condition(raw: Any) -> ConditionNode:
    """Parse ``raw`` rejecting any malformed node. Used when rules are authored."""
    return parse_condition(raw, ConditionFailurePolicy.REJECT)


def referenced_fields(node: ConditionNode) -> list[str]:
    """Return the sorted, de-duplicated field paths a tree reads."""
    fields: set[str] = set()
    stack: list[ConditionNode] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, LeafCondition):
            fields.add(current.field)
        elif isinstance(current, (AllCondition, AnyCondition)):
            stack.extend(current.children)
    return sorted(fields)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def resolve_field(context: Any, path: str) -> Any:
    """Walk a dotted path (``loan.borrower.state``) through mappings and lists.

    Returns UNDEFINED as soon as a step is missing.
    """
    current = context
    for part in path.split("."):
        if current is None or current is UNDEFINED:
            return UNDEFINED
        if isinstance(current, Mapping):
            current = current.get(part, UNDEFINED)
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else UNDEFINED
        else:
            return UNDEFINED
    return current


def snapshot_inputs(node: ConditionNode, context: Mapping[str, Any], entity_type: str) -> dict[str, Any]:
    """Capture the value of every field a tree reads, keyed relative to the entity.

    ``loan.risk_rating`` is stored as ``risk_rating``; unresolved paths are None.
    """
    prefix = f"{entity_type}."
    snapshot: dict[str, Any] = {}
    for path in referenced_fields(node):
        value = resolve_field(context, path)
        key = path[len(prefix):] if path.startswith(prefix) else path
        snapshot[key] = None if value is UNDEFINED else value
    return snapshot


def evaluate(node: ConditionNode, context: Mapping[str, Any]) -> bool:
    """Evaluate a parsed condition tree against an entity context."""
    if isinstance(node, AllCondition):
        return all(evaluate(child, context) for child in node.children)
    if isinstance(node, AnyCondition):
        return any(evaluate(child, context) for child in node.children)
    if isinstance(node, LeafCondition):
        return _evaluate_leaf(node, context)
    return node.outcome


def evaluate_conditions(
    context: Mapping[str, Any],
    raw: Any,
    policy: ConditionFailurePolicy = ConditionFailurePolicy.NEVER_TRIGGER,
) -> bool:
    """Parse and evaluate a raw JSON condition tree in one call."""
    return evaluate(parse_condition(raw, policy), context)


def _evaluate_leaf(leaf: LeafCondition, context: Mapping[str, Any]) -> bool:
    actual = resolve_field(context, leaf.field)
    op = leaf.op

    if op is Operator.EXISTS:
        return actual is not UNDEFINED and actual is not None
    if op is Operator.EQ:
        return _strict_equals(actual, leaf.value)
    if op is Operator.NE:
        return not _strict_equals(actual, leaf.value)
    if op in _NUMERIC_OPERATORS:
        return _compare_numbers(op, _to_number(actual), _to_number(leaf.value))
    if op is Operator.IN:
        return isinstance(leaf.value, list) and any(_strict_equals(actual, item) for item in leaf.value)
    if op is Operator.CONTAINS:
        if isinstance(actual, str):
            return _to_text(leaf.value) in actual
        if isinstance(actual, list):
            return any(_strict_equals(item, leaf.value) for item in actual)
        return False
    return False


def _compare_numbers(op: Operator, left: float, right: float) -> bool:
    # NaN compares false under every operator
    if op is Operator.GT:
        return left > right
    if op is Operator.GTE:
        return left >= right
    if op is Operator.LT:
        return left < right
    return left <= right


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return float(left) == float(right)
    if _is_number(left) or _is_number(right):
        return False
    return bool(left == right)


_NUMERIC_TEXT = re.compile(r"[+-]?(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?|Infinity)")


def _to_number(value: Any) -> float:
    """Coerce a field or literal to a float; non-numeric input becomes NaN."""
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if not _NUMERIC_TEXT.fullmatch(text):
            return math.nan
        return float(text.replace("Infinity", "inf"))
    return math.nan


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
