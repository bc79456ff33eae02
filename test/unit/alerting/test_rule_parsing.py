"""Unit tests for load-time alert rule parsing."""

from __future__ import annotations

import logging

import pytest

from alerting.domain import (
    ConsecutiveWindow,
    RelativeChangeCondition,
    SetMembershipCondition,
    ThresholdCondition,
)
from alerting.errors import ConfigurationDefect
from alerting.rule_parsing import parse_condition, parse_rule, parse_rules, parse_window


def _rule_blob(**overrides: object) -> dict[str, object]:
    """Return a canonical rule mapping with optional overrides."""
    blob: dict[str, object] = {
        "id": "rule-pain-high",
        "name": "High pain",
        "metric_key": "painLevel",
        "severity": "high",
        "condition": {"operator": "gte", "threshold": 8},
    }
    blob.update(overrides)
    return blob


def test_parse_canonical_rule() -> None:
    """Canonical rules parse into a validated AlertRule."""
    rule = parse_rule(_rule_blob(priority=2, description="Severe pain reported"))

    assert rule.rule_id == "rule-pain-high"
    assert rule.metric_key == "painLevel"
    assert rule.severity == "HIGH"
    assert rule.priority == 2
    assert rule.condition == ThresholdCondition(operator="gte", threshold=8)
    assert rule.window is None
    assert rule.active is True
    assert rule.create_follow_up_task is False


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (">", "gt"),
        ("greater_than", "gt"),
        (">=", "gte"),
        ("LESS_THAN", "lt"),
        ("<=", "lte"),
        ("==", "eq"),
        ("not_equals", "neq"),
    ],
)
def test_operator_aliases_normalize(raw: str, expected: str) -> None:
    """Operator aliases normalize to canonical operator names."""
    condition = parse_condition({"operator": raw, "threshold": 5})

    assert isinstance(condition, ThresholdCondition)
    assert condition.operator == expected


def test_ordering_operator_parses_numeric_string_threshold() -> None:
    """Numeric strings are accepted as thresholds for ordering operators."""
    condition = parse_condition({"operator": "gt", "value": "38.5"})

    assert condition == ThresholdCondition(operator="gt", threshold=38.5)


def test_set_membership_condition() -> None:
    """The in operator builds a set membership condition."""
    condition = parse_condition({"operator": "one_of", "values": ["SEVERE", "CRISIS"]})

    assert condition == SetMembershipCondition(values=frozenset({"SEVERE", "CRISIS"}))


@pytest.mark.parametrize(
    ("blob", "direction", "basis"),
    [
        ({"operator": "increase", "threshold": 5}, "increase", "absolute"),
        ({"operator": "decreased_by", "threshold": 5}, "decrease", "absolute"),
        ({"operator": "percent_increase", "threshold": 20}, "increase", "percent"),
        ({"operator": "increase", "threshold": 20, "percentage": True}, "increase", "percent"),
    ],
)
def test_relative_change_conditions(blob: dict[str, object], direction: str, basis: str) -> None:
    """Relative change operators record direction and basis."""
    condition = parse_condition(blob)

    assert isinstance(condition, RelativeChangeCondition)
    assert condition.direction == direction
    assert condition.basis == basis


def test_canonical_window_defaults_min_count_to_days() -> None:
    """A window without min_count requires every day in the window."""
    window = parse_window({"window": {"days": 3}})

    assert window == ConsecutiveWindow(window_days=3, min_count=3)


def test_legacy_evaluation_window_with_consecutive_flag() -> None:
    """Legacy ``evaluationWindow`` plus ``consecutive`` requires W adjacent days."""
    window = parse_window({"evaluationWindow": "3 days", "consecutive": True})

    assert window == ConsecutiveWindow(window_days=3, min_count=3, require_consecutive=True)


def test_legacy_window_with_consecutive_days() -> None:
    """Legacy ``window`` span plus ``consecutiveDays`` maps to W and N."""
    window = parse_window({"window": "5d", "consecutiveDays": 3})

    assert window == ConsecutiveWindow(window_days=5, min_count=3, require_consecutive=True)


def test_single_day_legacy_window_is_instant() -> None:
    """A one-day legacy window without consecutive behaves as an instant rule."""
    assert parse_window({"evaluationWindow": "1 day"}) is None


def test_flat_legacy_rule_with_task_action() -> None:
    """Flat legacy rules read operator and threshold from the rule itself."""
    rule = parse_rule(
        {
            "id": "rule-weight-gain",
            "name": "Rapid weight gain",
            "metricKey": "weight",
            "operator": "increase",
            "threshold": 2,
            "severity": "MEDIUM",
            "actions": {"createTask": True},
        }
    )

    assert rule.metric_key == "weight"
    assert rule.condition == RelativeChangeCondition(direction="increase", threshold=2.0)
    assert rule.create_follow_up_task is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"severity": "URGENT"},
        {"metric_key": None},
        {"condition": {"operator": "between", "threshold": 3}},
        {"condition": {"operator": "gt", "threshold": "high"}},
        {"condition": {"operator": "in", "values": "SEVERE"}},
        {"window": {"days": 3, "min_count": 4}},
        {"condition": {"operator": "increase", "threshold": 2}, "window": {"days": 3}},
    ],
)
def test_malformed_rules_raise_configuration_defect(overrides: dict[str, object]) -> None:
    """Malformed rules are rejected with the offending rule id."""
    with pytest.raises(ConfigurationDefect) as excinfo:
        parse_rule(_rule_blob(**overrides))

    assert excinfo.value.rule_id == "rule-pain-high"
    assert excinfo.value.code == "configuration_defect"


def test_rule_without_id_is_rejected() -> None:
    """Rules must carry an identifier."""
    blob = _rule_blob()
    del blob["id"]

    with pytest.raises(ConfigurationDefect):
        parse_rule(blob)


def test_parse_rules_skips_invalid_definitions(caplog: pytest.LogCaptureFixture) -> None:
    """Invalid rules are logged and skipped while valid rules load."""
    with caplog.at_level(logging.ERROR, logger="alerting.rule_parsing"):
        rules = parse_rules(
            [
                _rule_blob(),
                _rule_blob(id="rule-broken", severity="URGENT"),
            ]
        )

    assert [rule.rule_id for rule in rules] == ["rule-pain-high"]
    assert "rule-broken" in caplog.text


def test_inactive_flag_is_honored() -> None:
    """A boolean false active flag disables the rule."""
    assert parse_rule(_rule_blob(active=False)).active is False
    assert parse_rule(_rule_blob(is_active=False)).active is False


@pytest.mark.parametrize(
    "overrides",
    [
        {"active": "false"},
        {"is_active": 0},
        {"create_follow_up_task": "yes"},
    ],
)
def test_non_boolean_flags_are_rejected(overrides: dict[str, object]) -> None:
    """Flags must be real booleans so strings like "false" never enable a rule."""
    with pytest.raises(ConfigurationDefect, match="must be true or false") as excinfo:
        parse_rule(_rule_blob(**overrides))

    assert excinfo.value.rule_id == "rule-pain-high"
