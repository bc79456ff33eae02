"""Load-time parsing and validation of alert rule definitions."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping

from alerting.domain import (
    AlertRule,
    Condition,
    ConsecutiveWindow,
    RelativeChangeCondition,
    SetMembershipCondition,
    ThresholdCondition,
)
from alerting.errors import ConfigurationDefect

logger = logging.getLogger(__name__)

OPERATOR_ALIASES = {
    "gt": "gt",
    ">": "gt",
    "greater_than": "gt",
    "gte": "gte",
    ">=": "gte",
    "greater_than_or_equal": "gte",
    "lt": "lt",
    "<": "lt",
    "less_than": "lt",
    "lte": "lte",
    "<=": "lte",
    "less_than_or_equal": "lte",
    "eq": "eq",
    "==": "eq",
    "equals": "eq",
    "neq": "neq",
    "!=": "neq",
    "not_equals": "neq",
    "in": "in",
    "one_of": "in",
    "increase": "increase",
    "increased_by": "increase",
    "decrease": "decrease",
    "decreased_by": "decrease",
    "percent_increase": "percent_increase",
    "percent_decrease": "percent_decrease",
}
_DAY_SPAN_PATTERN = re.compile(r"^\s*(\d+)\s*(d|day|days)?\s*$", re.IGNORECASE)


def parse_rule(blob: Mapping[str, Any]) -> AlertRule:
    """Parse a rule mapping into a validated ``AlertRule``.

    Accepts the canonical shape (``condition`` and ``window`` sub-mappings) as
    well as the flat legacy shape where operator, threshold and window fields
    sit on the rule itself.

    Raises:
        ConfigurationDefect: If the rule is malformed.
    """
    if not isinstance(blob, Mapping):
        raise ConfigurationDefect("Rule definition must be a mapping.")
    rule_id = _required_str(blob, "id", rule_id=None)
    try:
        metric_key = _first_str(blob, ("metric_key", "metricKey", "metric"))
        if metric_key is None:
            raise ConfigurationDefect("Rule metric_key is required.")
        condition_blob = blob.get("condition")
        if condition_blob is None:
            condition_blob = blob
        if not isinstance(condition_blob, Mapping):
            raise ConfigurationDefect("Rule condition must be a mapping.")
        severity = _required_str(blob, "severity", rule_id=rule_id).upper()
        return AlertRule(
            rule_id=rule_id,
            name=_first_str(blob, ("name",)) or rule_id,
            metric_key=metric_key,
            condition=parse_condition(condition_blob),
            severity=severity,
            priority=_parse_int(blob.get("priority", 0), "priority"),
            unit=_first_str(blob, ("unit",)),
            window=parse_window(blob),
            description=_first_str(blob, ("description",)),
            active=_parse_bool(blob.get("active", blob.get("is_active", True)), "active"),
            create_follow_up_task=_parse_task_flag(blob),
        )
    except ConfigurationDefect as exc:
        if exc.rule_id is not None:
            raise
        raise ConfigurationDefect(exc.message, rule_id=rule_id, details=exc.details) from exc


def parse_rules(blobs: Iterable[Mapping[str, Any]]) -> list[AlertRule]:
    """Parse rule mappings, logging and skipping malformed definitions."""
    rules: list[AlertRule] = []
    for blob in blobs:
        try:
            rules.append(parse_rule(blob))
        except ConfigurationDefect as exc:
            logger.error(
                "Rejected alert rule: rule_id=%s code=%s error=%s",
                exc.rule_id,
                exc.code,
                exc.message,
            )
    return rules


def parse_condition(blob: Mapping[str, Any]) -> Condition:
    """Parse a condition mapping into one of the condition variants."""
    raw_operator = blob.get("operator")
    if not isinstance(raw_operator, str) or not raw_operator.strip():
        raise ConfigurationDefect("Condition operator is required.")
    operator = OPERATOR_ALIASES.get(raw_operator.strip().lower())
    if operator is None:
        raise ConfigurationDefect(f"Operator '{raw_operator}' is not supported.")

    if operator == "in":
        values = blob.get("values", blob.get("value"))
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            raise ConfigurationDefect("Set membership requires a list of values.")
        return SetMembershipCondition(values=frozenset(str(value) for value in values))

    threshold = blob.get("threshold", blob.get("value"))
    if operator in {"increase", "decrease", "percent_increase", "percent_decrease"}:
        basis = "percent" if operator.startswith("percent_") else str(blob.get("basis", "absolute"))
        if blob.get("percentage") is True:
            basis = "percent"
        return RelativeChangeCondition(
            direction=operator.removeprefix("percent_"),
            threshold=_parse_number(threshold, "threshold"),
            basis=basis.strip().lower(),
        )

    if threshold is None:
        raise ConfigurationDefect(f"Threshold is required for operator '{operator}'.")
    if isinstance(threshold, str) and operator in {"gt", "gte", "lt", "lte"}:
        threshold = _parse_number(threshold, "threshold")
    return ThresholdCondition(operator=operator, threshold=threshold)


def parse_window(blob: Mapping[str, Any]) -> ConsecutiveWindow | None:
    """Parse the consecutive-occurrence window from canonical or legacy fields."""
    window = blob.get("window")
    if isinstance(window, Mapping):
        days = _parse_int(window.get("days"), "window.days")
        return ConsecutiveWindow(
            window_days=days,
            min_count=_parse_int(window.get("min_count", days), "window.min_count"),
            require_consecutive=bool(window.get("require_consecutive", False)),
        )

    legacy_span = window if window is not None else blob.get("evaluationWindow")
    consecutive_days = blob.get("consecutiveDays")
    if legacy_span is None and consecutive_days is None:
        return None
    if consecutive_days is not None:
        min_count = _parse_int(consecutive_days, "consecutiveDays")
        days = _parse_day_span(legacy_span) if legacy_span is not None else min_count
        return ConsecutiveWindow(window_days=days, min_count=min_count, require_consecutive=True)
    days = _parse_day_span(legacy_span)
    if days <= 1 and not blob.get("consecutive"):
        return None
    return ConsecutiveWindow(
        window_days=days,
        min_count=days if blob.get("consecutive") else 1,
        require_consecutive=bool(blob.get("consecutive")),
    )


def _parse_day_span(value: Any) -> int:
    """Parse a day span such as ``3``, ``"5d"`` or ``"3 days"``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        match = _DAY_SPAN_PATTERN.match(value)
        if match:
            return int(match.group(1))
    raise ConfigurationDefect(f"Unsupported evaluation window: {value!r}")


def _parse_task_flag(blob: Mapping[str, Any]) -> bool:
    """Return whether the rule requests a follow-up task."""
    if "create_follow_up_task" in blob:
        return _parse_bool(blob["create_follow_up_task"], "create_follow_up_task")
    actions = blob.get("actions")
    if isinstance(actions, Mapping):
        return _parse_bool(
            actions.get("createTask", actions.get("create_task", False)),
            "actions.createTask",
        )
    return False


def _parse_bool(value: Any, label: str) -> bool:
    """Parse a boolean flag; strings such as "false" are rejected."""
    if not isinstance(value, bool):
        raise ConfigurationDefect(f"{label} must be true or false.")
    return value


def _parse_number(value: Any, label: str) -> float:
    """Parse a numeric configuration value."""
    if isinstance(value, bool) or value is None:
        raise ConfigurationDefect(f"{label} must be numeric.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationDefect(f"{label} must be numeric.") from exc


def _parse_int(value: Any, label: str) -> int:
    """Parse an integer configuration value."""
    if isinstance(value, bool) or value is None:
        raise ConfigurationDefect(f"{label} must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationDefect(f"{label} must be an integer.") from exc


def _first_str(blob: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    """Return the first non-blank string among the given keys."""
    for key in keys:
        value = blob.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _required_str(blob: Mapping[str, Any], key: str, *, rule_id: str | None) -> str:
    """Return a required string field or raise a configuration defect."""
    value = blob.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and key == "id":
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationDefect(f"Rule {key} is required.", rule_id=rule_id)
    return value.strip()
