"""Instant comparisons between an observation and a rule condition."""

from __future__ import annotations

from alerting.domain import (
    VALUE_CODED,
    VALUE_NUMERIC,
    VALUE_TEXT,
    AlertRule,
    Condition,
    Observation,
    RelativeChangeCondition,
    SetMembershipCondition,
    ThresholdCondition,
)
from alerting.errors import ConfigurationDefect


def check_compatibility(rule: AlertRule, observation: Observation) -> None:
    """Ensure a rule can be evaluated against an observation's value type.

    Raises:
        ConfigurationDefect: If the operator, threshold or unit is incompatible.
    """
    if rule.unit and observation.unit and rule.unit.strip().lower() != observation.unit.strip().lower():
        raise ConfigurationDefect(
            f"Rule unit '{rule.unit}' does not match observation unit '{observation.unit}'.",
            rule_id=rule.rule_id,
            details={"observation_id": observation.observation_id},
        )
    condition = rule.condition
    value_type = observation.value_type
    if isinstance(condition, ThresholdCondition):
        if condition.numeric and value_type != VALUE_NUMERIC:
            raise _type_defect(rule, observation, "numeric")
        if not condition.numeric and value_type not in {VALUE_CODED, VALUE_TEXT}:
            raise _type_defect(rule, observation, "coded or text")
        return
    if isinstance(condition, SetMembershipCondition):
        if value_type != VALUE_CODED:
            raise _type_defect(rule, observation, "coded")
        return
    if isinstance(condition, RelativeChangeCondition):
        if value_type != VALUE_NUMERIC:
            raise _type_defect(rule, observation, "numeric")
        return
    raise ConfigurationDefect(
        f"Unsupported condition type: {type(condition).__name__}",
        rule_id=rule.rule_id,
    )


def matches_instant(condition: Condition, observation: Observation) -> bool:
    """Return whether a single observation satisfies a threshold or set condition."""
    if isinstance(condition, SetMembershipCondition):
        return observation.coded_value in condition.values
    if not isinstance(condition, ThresholdCondition):
        raise ValueError(f"Condition is not an instant comparison: {type(condition).__name__}")
    observed = observation.value
    threshold = condition.threshold
    operator = condition.operator
    if operator == "eq":
        return observed == threshold
    if operator == "neq":
        return observed != threshold
    if operator == "gt":
        return observed > threshold
    if operator == "gte":
        return observed >= threshold
    if operator == "lt":
        return observed < threshold
    if operator == "lte":
        return observed <= threshold
    raise ValueError(f"Unsupported operator: {operator}")


def compute_change(
    condition: RelativeChangeCondition,
    previous: Observation,
    current: Observation,
) -> float | None:
    """Compute the directional change from ``previous`` to ``current``.

    Returns the increase (or decrease, as a positive number) in absolute units
    or percent of the previous value. Returns ``None`` when a percentage is
    requested and the previous value is zero.
    """
    previous_value = float(previous.numeric_value)  # type: ignore[arg-type]
    current_value = float(current.numeric_value)  # type: ignore[arg-type]
    delta = current_value - previous_value
    if condition.direction == "decrease":
        delta = -delta
    if condition.basis == "percent":
        if previous_value == 0:
            return None
        return delta / abs(previous_value) * 100.0
    return delta


def _type_defect(rule: AlertRule, observation: Observation, expected: str) -> ConfigurationDefect:
    """Build a defect describing an operator/value type mismatch."""
    return ConfigurationDefect(
        f"Rule condition requires a {expected} value but observation "
        f"{observation.observation_id} is {observation.value_type}.",
        rule_id=rule.rule_id,
        details={"observation_id": observation.observation_id},
    )
