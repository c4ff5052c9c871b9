"""Tests for condition tree parsing and evaluation.

Tests verify:
- Vacuous truth of empty all/any groups
- Strict equality and numeric coercion semantics of leaf operators
- Field path resolution (missing vs null)
- The three malformed-condition policies
- Field extraction used for the inputs snapshot
"""

from typing import Any

import pytest

from kontra_policy_engine.common.errors import InvalidConditionError
from kontra_policy_engine.core.conditions import (
    UNDEFINED,
    AllCondition,
    AnyCondition,
    ConditionFailurePolicy,
    InvalidCondition,
    LeafCondition,
    Operator,
    evaluate,
    evaluate_conditions,
    parse_condition,
    referenced_fields,
    resolve_field,
    snapshot_inputs,
    validate_condition,
)


def leaf(field: str, op: str, value: Any = None) -> dict[str, Any]:
    return {"field": field, "op": op, "value": value}


LOAN = {
    "loan": {
        "id": "loan-1",
        "risk_rating": 7,
        "special_product": "FHA-203k",
        "state": "TX",
        "flags": ["escrow", "arm"],
        "borrower": {"name": "A. Smith", "coborrowers": [{"name": "B. Smith"}]},
        "notes": None,
        "balance": "250000",
        "blank": "",
        "insured": True,
    }
}


class TestGroups:
    """Tests for all/any grouping."""

    def test_empty_all_is_true(self) -> None:
        assert evaluate_conditions({}, {"all": []}) is True

    def test_empty_any_is_false(self) -> None:
        assert evaluate_conditions({}, {"any": []}) is False

    def test_empty_object_never_triggers(self) -> None:
        assert evaluate_conditions(LOAN, {}) is False

    def test_empty_object_is_accepted_under_reject(self) -> None:
        assert parse_condition({}, ConditionFailurePolicy.REJECT) == AnyCondition(children=())
        validate_condition({})

    def test_all_requires_every_child(self) -> None:
        tree = {"all": [leaf("loan.risk_rating", ">=", 7), leaf("loan.state", "=", "CA")]}
        assert evaluate_conditions(LOAN, tree) is False

    def test_any_requires_one_child(self) -> None:
        tree = {"any": [leaf("loan.risk_rating", ">=", 9), leaf("loan.state", "=", "TX")]}
        assert evaluate_conditions(LOAN, tree) is True

    def test_nested_groups(self) -> None:
        tree = {
            "all": [
                leaf("loan.risk_rating", ">", 5),
                {"any": [leaf("loan.special_product", "contains", "203"), leaf("loan.state", "=", "NY")]},
            ]
        }
        assert evaluate_conditions(LOAN, tree) is True

    def test_parse_builds_typed_tree(self) -> None:
        node = parse_condition({"all": [leaf("loan.risk_rating", "=", 7), {"any": []}]})

        assert isinstance(node, AllCondition)
        assert node.children[0] == LeafCondition(field="loan.risk_rating", op=Operator.EQ, value=7)
        assert node.children[1] == AnyCondition(children=())


class TestEquality:
    """Tests for = and != strict equality."""

    def test_equal_risk_rating_triggers(self) -> None:
        assert evaluate_conditions({"loan": {"risk_rating": 7}}, leaf("loan.risk_rating", "=", 7)) is True

    def test_different_risk_rating_does_not_trigger(self) -> None:
        assert evaluate_conditions({"loan": {"risk_rating": 6}}, leaf("loan.risk_rating", "=", 7)) is False

    def test_integer_equals_float(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.risk_rating", "=", 7.0)) is True

    def test_string_never_equals_number(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.balance", "=", 250000)) is False

    def test_boolean_never_equals_number(self) -> None:
        assert evaluate_conditions({"loan": {"flag": True}}, leaf("loan.flag", "=", 1)) is False
        assert evaluate_conditions(LOAN, leaf("loan.insured", "=", True)) is True

    def test_missing_field_is_not_null(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.missing", "=", None)) is False
        assert evaluate_conditions(LOAN, leaf("loan.missing", "!=", None)) is True

    def test_null_field_equals_null(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.notes", "=", None)) is True

    def test_not_equal(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.state", "!=", "CA")) is True
        assert evaluate_conditions(LOAN, leaf("loan.state", "!=", "TX")) is False


class TestNumericComparison:
    """Tests for > >= < <= numeric coercion."""

    @pytest.mark.parametrize(
        ("op", "value", "expected"),
        [(">", 6, True), (">", 7, False), (">=", 7, True), ("<", 8, True), ("<=", 6, False)],
    )
    def test_numeric_operators(self, op: str, value: int, expected: bool) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.risk_rating", op, value)) is expected

    def test_numeric_string_is_coerced(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.balance", ">", 100000)) is True
        assert evaluate_conditions(LOAN, leaf("loan.risk_rating", ">", "6")) is True

    def test_null_and_blank_coerce_to_zero(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.notes", ">=", 0)) is True
        assert evaluate_conditions(LOAN, leaf("loan.blank", "<=", 0)) is True

    def test_non_numeric_text_never_compares(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.state", ">", 0)) is False
        assert evaluate_conditions(LOAN, leaf("loan.state", "<=", 0)) is False

    def test_missing_field_never_compares(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.missing", ">=", 0)) is False
        assert evaluate_conditions(LOAN, leaf("loan.missing", "<", 0)) is False

    def test_infinity_text(self) -> None:
        assert evaluate_conditions({"loan": {"ltv": "Infinity"}}, leaf("loan.ltv", ">", 1e308)) is True


class TestMembershipAndPresence:
    """Tests for in, contains and exists."""

    def test_in_list(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.state", "in", ["TX", "FL"])) is True
        assert evaluate_conditions(LOAN, leaf("loan.state", "in", ["CA"])) is False

    def test_in_uses_strict_equality(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.risk_rating", "in", ["7"])) is False

    def test_in_with_scalar_value_is_false(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.state", "in", "TX")) is False

    def test_contains_substring(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.special_product", "contains", "203k")) is True
        assert evaluate_conditions(LOAN, leaf("loan.special_product", "contains", "VA")) is False

    def test_contains_list_member(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.flags", "contains", "arm")) is True
        assert evaluate_conditions(LOAN, leaf("loan.flags", "contains", "heloc")) is False

    def test_contains_on_number_is_false(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.risk_rating", "contains", 7)) is False

    def test_exists(self) -> None:
        assert evaluate_conditions(LOAN, leaf("loan.state", "exists")) is True
        assert evaluate_conditions(LOAN, leaf("loan.blank", "exists")) is True
        assert evaluate_conditions(LOAN, leaf("loan.notes", "exists")) is False
        assert evaluate_conditions(LOAN, leaf("loan.missing", "exists")) is False


class TestFieldResolution:
    """Tests for resolve_field."""

    def test_nested_mapping(self) -> None:
        assert resolve_field(LOAN, "loan.borrower.name") == "A. Smith"

    def test_list_index(self) -> None:
        assert resolve_field(LOAN, "loan.borrower.coborrowers.0.name") == "B. Smith"
        assert resolve_field(LOAN, "loan.borrower.coborrowers.3.name") is UNDEFINED

    def test_missing_step_is_undefined(self) -> None:
        assert resolve_field(LOAN, "loan.notes.text") is UNDEFINED
        assert resolve_field(LOAN, "application.id") is UNDEFINED

    def test_undefined_is_falsy_and_distinct_from_none(self) -> None:
        assert not UNDEFINED
        assert UNDEFINED is not None


class TestFailurePolicy:
    """Tests for malformed condition handling."""

    @pytest.mark.parametrize(
        "raw",
        [
            leaf("loan.risk_rating", "between", [1, 2]),
            leaf("loan.state", "in", "TX"),
            {"op": "=", "value": 1},
            {"field": "", "op": "=", "value": 1},
            {"all": {"field": "loan.state"}},
            ["not", "an", "object"],
        ],
    )
    def test_reject_raises(self, raw: Any) -> None:
        with pytest.raises(InvalidConditionError):
            parse_condition(raw, ConditionFailurePolicy.REJECT)

    def test_reject_reports_path(self) -> None:
        tree = {"all": [leaf("loan.state", "=", "TX"), leaf("loan.state", "~", "T")]}

        with pytest.raises(InvalidConditionError) as exc_info:
            validate_condition(tree)

        assert exc_info.value.path == "$.all[1]"
        assert exc_info.value.details["field"] == "conditions"

    def test_never_trigger_evaluates_false(self) -> None:
        tree = {"any": [leaf("loan.state", "~", "TX")]}
        node = parse_condition(tree, ConditionFailurePolicy.NEVER_TRIGGER)

        assert isinstance(node.children[0], InvalidCondition)
        assert evaluate(node, LOAN) is False

    def test_always_trigger_evaluates_true(self) -> None:
        tree = {"all": [leaf("loan.state", "=", "TX"), leaf("loan.state", "~", "TX")]}
        assert evaluate_conditions(LOAN, tree, ConditionFailurePolicy.ALWAYS_TRIGGER) is True

    def test_malformed_sibling_does_not_mask_valid_one(self) -> None:
        tree = {"any": [leaf("loan.state", "~", "TX"), leaf("loan.state", "=", "TX")]}
        assert evaluate_conditions(LOAN, tree, ConditionFailurePolicy.NEVER_TRIGGER) is True


class TestReferencedFields:
    """Tests for field extraction and inputs snapshots."""

    def test_referenced_fields_sorted_and_unique(self) -> None:
        node = parse_condition(
            {
                "all": [
                    leaf("loan.state", "=", "TX"),
                    {"any": [leaf("loan.risk_rating", ">", 5), leaf("loan.state", "=", "FL")]},
                ]
            }
        )
        assert referenced_fields(node) == ["loan.risk_rating", "loan.state"]

    def test_snapshot_strips_entity_prefix(self) -> None:
        node = parse_condition(
            {"all": [leaf("loan.risk_rating", ">", 5), leaf("loan.missing", "exists"), leaf("app.x", "exists")]}
        )

        snapshot = snapshot_inputs(node, LOAN, "loan")

        assert snapshot == {"risk_rating": 7, "missing": None, "app.x": None}
