"""Response-time targets and alert message rendering."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping

from alerting.domain import AlertRule, Observation
from config import settings


def compute_sla_breach_at(
    severity: str,
    triggered_at: datetime,
    *,
    sla_minutes: Mapping[str, int] | None = None,
) -> datetime:
    """Return when an alert of the given severity breaches its response target."""
    minutes_by_severity = sla_minutes or settings.sla.minutes
    try:
        minutes = minutes_by_severity[severity]
    except KeyError as exc:
        raise ValueError(f"No SLA configured for severity: {severity}") from exc
    return triggered_at + timedelta(minutes=int(minutes))


def build_alert_message(rule: AlertRule, observation: Observation) -> str:
    """Render the human-readable alert message, e.g. ``Severe pain: painLevel is 9``."""
    label = rule.description or rule.name
    unit = observation.unit or rule.unit
    value = _format_value(observation.value)
    if unit:
        return f"{label}: {observation.metric_key} is {value} {unit}"
    return f"{label}: {observation.metric_key} is {value}"


def _format_value(value: float | str) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
