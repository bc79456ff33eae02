"""Typed observations, alert rules, and evaluation results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, ClassVar, Mapping, Union
from uuid import UUID

from alerting.errors import ConfigurationDefect
from time_utils import to_utc

OBSERVATION_SOURCES = frozenset(["MANUAL", "DEVICE", "CLINICIAN"])
SEVERITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}
THRESHOLD_OPERATORS = frozenset(["gt", "gte", "lt", "lte", "eq", "neq"])
ORDERING_OPERATORS = frozenset(["gt", "gte", "lt", "lte"])
CHANGE_DIRECTIONS = frozenset(["increase", "decrease"])
CHANGE_BASES = frozenset(["absolute", "percent"])

VALUE_NUMERIC = "numeric"
VALUE_CODED = "coded"
VALUE_TEXT = "text"


@dataclass(frozen=True)
class Observation:
    """A single immutable patient measurement.

    Exactly one of ``numeric_value``, ``coded_value`` or ``text_value`` is
    populated. Timestamps are normalized to UTC on construction.
    """

    observation_id: str
    patient_id: str
    metric_key: str
    recorded_at: datetime
    ingested_at: datetime
    numeric_value: float | None = None
    coded_value: str | None = None
    text_value: str | None = None
    unit: str | None = None
    source: str = "MANUAL"

    def __post_init__(self) -> None:
        """Validate the typed value and normalize timestamps."""
        populated = [
            name
            for name, value in (
                (VALUE_NUMERIC, self.numeric_value),
                (VALUE_CODED, self.coded_value),
                (VALUE_TEXT, self.text_value),
            )
            if value is not None
        ]
        if len(populated) != 1:
            raise ValueError(
                "Observation must populate exactly one of numeric_value, coded_value, text_value."
            )
        if isinstance(self.numeric_value, bool):
            raise ValueError("Observation numeric_value must be a number, not a boolean.")
        if self.source not in OBSERVATION_SOURCES:
            raise ValueError(f"Unsupported observation source: {self.source}")
        object.__setattr__(self, "recorded_at", to_utc(self.recorded_at))
        object.__setattr__(self, "ingested_at", to_utc(self.ingested_at))

    @property
    def value_type(self) -> str:
        """Return which typed value slot is populated."""
        if self.numeric_value is not None:
            return VALUE_NUMERIC
        if self.coded_value is not None:
            return VALUE_CODED
        return VALUE_TEXT

    @property
    def value(self) -> float | str:
        """Return the populated value."""
        if self.numeric_value is not None:
            return self.numeric_value
        if self.coded_value is not None:
            return self.coded_value
        return self.text_value  # type: ignore[return-value]

    def to_payload(self) -> dict[str, Any]:
        """Serialize the observation to a JSON-compatible mapping."""
        return {
            "observation_id": self.observation_id,
            "patient_id": self.patient_id,
            "metric_key": self.metric_key,
            "recorded_at": self.recorded_at.isoformat(),
            "ingested_at": self.ingested_at.isoformat(),
            "numeric_value": self.numeric_value,
            "coded_value": self.coded_value,
            "text_value": self.text_value,
            "unit": self.unit,
            "source": self.source,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Observation":
        """Rebuild an observation from ``to_payload`` output."""
        return cls(
            observation_id=str(payload["observation_id"]),
            patient_id=str(payload["patient_id"]),
            metric_key=str(payload["metric_key"]),
            recorded_at=datetime.fromisoformat(payload["recorded_at"]),
            ingested_at=datetime.fromisoformat(payload["ingested_at"]),
            numeric_value=payload.get("numeric_value"),
            coded_value=payload.get("coded_value"),
            text_value=payload.get("text_value"),
            unit=payload.get("unit"),
            source=payload.get("source") or "MANUAL",
        )


@dataclass(frozen=True)
class ThresholdCondition:
    """Direct comparison of the observed value against a threshold."""

    kind: ClassVar[str] = "threshold"

    operator: str
    threshold: float | str

    def __post_init__(self) -> None:
        """Validate operator/threshold compatibility."""
        if self.operator not in THRESHOLD_OPERATORS:
            raise ConfigurationDefect(f"Operator '{self.operator}' is not supported.")
        if isinstance(self.threshold, bool) or self.threshold is None:
            raise ConfigurationDefect("Threshold must be a number or a coded value.")
        if self.operator in ORDERING_OPERATORS and not isinstance(self.threshold, (int, float)):
            raise ConfigurationDefect(
                f"Operator '{self.operator}' requires a numeric threshold."
            )

    @property
    def numeric(self) -> bool:
        """Return whether the threshold is numeric."""
        return isinstance(self.threshold, (int, float))

    def describe(self) -> dict[str, Any]:
        """Return a JSON-compatible description of the condition."""
        return {"kind": self.kind, "operator": self.operator, "threshold": self.threshold}


@dataclass(frozen=True)
class SetMembershipCondition:
    """Coded value must be one of a fixed set."""

    kind: ClassVar[str] = "set_membership"

    values: frozenset[str]

    def __post_init__(self) -> None:
        """Validate the membership set."""
        if not self.values:
            raise ConfigurationDefect("Set membership requires at least one value.")
        object.__setattr__(self, "values", frozenset(str(value) for value in self.values))

    def describe(self) -> dict[str, Any]:
        """Return a JSON-compatible description of the condition."""
        return {"kind": self.kind, "values": sorted(self.values)}


@dataclass(frozen=True)
class RelativeChangeCondition:
    """Change from the immediately preceding observation meets a threshold."""

    kind: ClassVar[str] = "relative_change"

    direction: str
    threshold: float
    basis: str = "absolute"

    def __post_init__(self) -> None:
        """Validate direction, basis, and threshold."""
        if self.direction not in CHANGE_DIRECTIONS:
            raise ConfigurationDefect(f"Change direction '{self.direction}' is not supported.")
        if self.basis not in CHANGE_BASES:
            raise ConfigurationDefect(f"Change basis '{self.basis}' is not supported.")
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)):
            raise ConfigurationDefect("Relative change threshold must be numeric.")
        if self.threshold < 0:
            raise ConfigurationDefect("Relative change threshold must be >= 0.")

    def describe(self) -> dict[str, Any]:
        """Return a JSON-compatible description of the condition."""
        return {
            "kind": self.kind,
            "direction": self.direction,
            "threshold": self.threshold,
            "basis": self.basis,
        }


Condition = Union[ThresholdCondition, SetMembershipCondition, RelativeChangeCondition]


@dataclass(frozen=True)
class ConsecutiveWindow:
    """Trailing calendar-day window requiring ``min_count`` qualifying days."""

    window_days: int
    min_count: int
    require_consecutive: bool = False

    def __post_init__(self) -> None:
        """Validate window bounds."""
        if self.window_days < 1:
            raise ConfigurationDefect("Window days must be >= 1.")
        if not 1 <= self.min_count <= self.window_days:
            raise ConfigurationDefect("Window min_count must be between 1 and window_days.")


@dataclass(frozen=True)
class AlertRule:
    """Read-only alert rule supplied by the rule catalog."""

    rule_id: str
    name: str
    metric_key: str
    condition: Condition
    severity: str
    priority: int = 0
    unit: str | None = None
    window: ConsecutiveWindow | None = None
    description: str | None = None
    active: bool = True
    create_follow_up_task: bool = False

    def __post_init__(self) -> None:
        """Validate severity and condition/window pairing."""
        if self.severity not in SEVERITY_RANK:
            raise ConfigurationDefect(
                f"Unsupported severity: {self.severity}",
                rule_id=self.rule_id,
            )
        if isinstance(self.condition, RelativeChangeCondition) and self.window is not None:
            raise ConfigurationDefect(
                "Relative change conditions cannot be combined with a day window.",
                rule_id=self.rule_id,
            )

    @property
    def severity_rank(self) -> int:
        """Return the ordinal rank of the rule's severity."""
        return SEVERITY_RANK[self.severity]


@dataclass(frozen=True)
class DayQualification:
    """Qualification result for one clinic-local calendar day."""

    day: date
    qualified: bool
    observation_ids: tuple[str, ...] = ()
    values: tuple[float | str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible mapping."""
        return {
            "day": self.day.isoformat(),
            "qualified": self.qualified,
            "observation_ids": list(self.observation_ids),
            "values": list(self.values),
        }


@dataclass(frozen=True)
class EvaluationContext:
    """Evidence explaining why a rule was satisfied."""

    observation: Observation
    condition: dict[str, Any]
    previous_observation: Observation | None = None
    change: float | None = None
    window_start: date | None = None
    window_end: date | None = None
    days: tuple[DayQualification, ...] = ()
    qualifying_days: int | None = None
    required_days: int | None = None
    require_consecutive: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible mapping for alert evidence."""
        payload: dict[str, Any] = {
            "observation_id": self.observation.observation_id,
            "metric_key": self.observation.metric_key,
            "value": self.observation.value,
            "unit": self.observation.unit,
            "recorded_at": self.observation.recorded_at.isoformat(),
            "condition": dict(self.condition),
        }
        if self.previous_observation is not None:
            payload["previous_observation_id"] = self.previous_observation.observation_id
            payload["previous_value"] = self.previous_observation.value
            payload["change"] = self.change
        if self.days:
            payload["window"] = {
                "start": self.window_start.isoformat() if self.window_start else None,
                "end": self.window_end.isoformat() if self.window_end else None,
                "qualifying_days": self.qualifying_days,
                "required_days": self.required_days,
                "require_consecutive": self.require_consecutive,
                "days": [day.to_payload() for day in self.days],
            }
        return payload


@dataclass(frozen=True)
class RuleMatch:
    """A satisfied rule paired with its evaluation context."""

    rule: AlertRule
    context: EvaluationContext


@dataclass(frozen=True)
class FollowUpTaskRequest:
    """One-way request for an external follow-up task."""

    alert_id: UUID
    patient_id: str
    rule_id: str
    severity: str
    message: str | None = None
