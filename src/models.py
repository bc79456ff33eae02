"""Data models for the clinical alerting service."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.attributes import set_committed_value

# SQLAlchemy base
Base = declarative_base()

OPEN_ALERT_STATUSES = ("PENDING", "ACKNOWLEDGED")
OPEN_ALERT_PREDICATE = "status IN ('PENDING', 'ACKNOWLEDGED')"

# Alerting enums
AlertStatusEnum = Enum(
    "PENDING",
    "ACKNOWLEDGED",
    "RESOLVED",
    "CANCELLED",
    name="alert_status",
    native_enum=False,
)
AlertSeverityEnum = Enum(
    "LOW",
    "MEDIUM",
    "HIGH",
    "CRITICAL",
    name="alert_severity",
    native_enum=False,
)
AlertTransitionEventEnum = Enum(
    "create",
    "claim",
    "acknowledge",
    "resolve",
    "unclaim",
    "release",
    "cancel",
    "evidence",
    "annotate",
    "escalate",
    "snooze",
    "reactivate",
    name="alert_transition_event",
    native_enum=False,
)
InterventionTypeEnum = Enum(
    "PHONE_CALL",
    "VIDEO_CALL",
    "IN_PERSON_VISIT",
    "SECURE_MESSAGE",
    "MEDICATION_ADJUSTMENT",
    "REFERRAL",
    "PATIENT_EDUCATION",
    "CARE_COORDINATION",
    "MEDICATION_RECONCILIATION",
    "NO_PATIENT_CONTACT",
    name="alert_intervention_type",
    native_enum=False,
)
PatientOutcomeEnum = Enum(
    "IMPROVED",
    "STABLE",
    "DECLINED",
    "NO_CHANGE",
    "PATIENT_UNREACHABLE",
    name="alert_patient_outcome",
    native_enum=False,
)


class Alert(Base):
    """Alert raised when a patient observation satisfies a rule."""

    __tablename__ = "alerts"
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ACKNOWLEDGED', 'RESOLVED', 'CANCELLED')",
            name="ck_alerts_status",
        ),
        CheckConstraint(
            "severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')",
            name="ck_alerts_severity",
        ),
        CheckConstraint(
            "time_spent_minutes IS NULL OR time_spent_minutes >= 0",
            name="ck_alerts_time_spent_non_negative",
        ),
        Index(
            "uq_alerts_open_patient_rule",
            "patient_id",
            "rule_id",
            unique=True,
            postgresql_where=text(OPEN_ALERT_PREDICATE),
            sqlite_where=text(OPEN_ALERT_PREDICATE),
        ),
        Index("ix_alerts_status_triggered_at", "status", "triggered_at"),
        Index("ix_alerts_patient_status", "patient_id", "status"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(String(200), nullable=False)
    rule_id = Column(String(200), nullable=False)
    observation_id = Column(String(200), nullable=False)
    metric_key = Column(String(200), nullable=False)
    severity = Column(AlertSeverityEnum, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    status = Column(AlertStatusEnum, nullable=False, default="PENDING")
    message = Column(Text, nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=False)
    sla_breach_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(200), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(String(200), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(200), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_text = Column(Text, nullable=True)
    time_spent_minutes = Column(Integer, nullable=True)
    intervention_type = Column(InterventionTypeEnum, nullable=True)
    patient_outcome = Column(PatientOutcomeEnum, nullable=True)
    cancelled_by = Column(String(200), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)
    escalation_reason = Column(Text, nullable=True)
    snoozed_by = Column(String(200), nullable=True)
    snoozed_at = Column(DateTime(timezone=True), nullable=True)
    snoozed_until = Column(DateTime(timezone=True), nullable=True)
    evidence = Column(JSON, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class AlertTransition(Base):
    """Audit record for every alert lifecycle event."""

    __tablename__ = "alert_transitions"
    __table_args__ = (
        CheckConstraint(
            "event_type IN ('create', 'claim', 'acknowledge', 'resolve', 'unclaim', "
            "'release', 'cancel', 'evidence', 'annotate', 'escalate', 'snooze', "
            "'reactivate')",
            name="ck_alert_transitions_event_type",
        ),
        Index("ix_alert_transitions_alert_occurred", "alert_id", "occurred_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Uuid(as_uuid=True), ForeignKey("alerts.id"), nullable=False)
    event_type = Column(AlertTransitionEventEnum, nullable=False)
    from_status = Column(AlertStatusEnum, nullable=True)
    to_status = Column(AlertStatusEnum, nullable=True)
    actor = Column(String(200), nullable=False)
    reason = Column(Text, nullable=True)
    context = Column(JSON, nullable=True)
    occurred_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class AlertReevaluationRequest(Base):
    """Observation queued for re-evaluation after an upstream outage."""

    __tablename__ = "alert_reevaluation_queue"
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_alert_reevaluation_attempts"),
        Index("ix_alert_reevaluation_retry_at", "retry_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    observation_id = Column(String(200), nullable=False, unique=True)
    patient_id = Column(String(200), nullable=False)
    metric_key = Column(String(200), nullable=False)
    payload = Column(JSON, nullable=False)
    reason = Column(String(200), nullable=False)
    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    queued_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    retry_at = Column(DateTime(timezone=True), nullable=False)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_ALERT_TIMESTAMP_FIELDS = (
    "triggered_at",
    "sla_breach_at",
    "claimed_at",
    "acknowledged_at",
    "resolved_at",
    "cancelled_at",
    "escalated_at",
    "snoozed_at",
    "snoozed_until",
    "created_at",
    "updated_at",
)


@event.listens_for(Alert, "load")
def _normalize_alert_on_load(target: Alert, _context: object) -> None:
    """Ensure loaded alert timestamps retain timezone awareness."""
    for field in _ALERT_TIMESTAMP_FIELDS:
        set_committed_value(target, field, _ensure_aware_timestamp(getattr(target, field)))


@event.listens_for(AlertTransition, "load")
def _normalize_transition_on_load(target: AlertTransition, _context: object) -> None:
    """Ensure loaded transition timestamps retain timezone awareness."""
    set_committed_value(target, "occurred_at", _ensure_aware_timestamp(target.occurred_at))


@event.listens_for(AlertReevaluationRequest, "load")
def _normalize_reevaluation_on_load(
    target: AlertReevaluationRequest, _context: object
) -> None:
    """Ensure loaded queue timestamps retain timezone awareness."""
    set_committed_value(target, "queued_at", _ensure_aware_timestamp(target.queued_at))
    set_committed_value(target, "retry_at", _ensure_aware_timestamp(target.retry_at))
