"""Create alert, alert transition, and re-evaluation queue tables.

Revision ID: 0001_alerting_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_alerting_schema"
down_revision = None
branch_labels = None
depends_on = None

OPEN_ALERT_PREDICATE = "status IN ('PENDING', 'ACKNOWLEDGED')"


def upgrade() -> None:
    """Create alerting tables and the open-alert partial unique index."""
    alert_status_enum = sa.Enum(
        "PENDING",
        "ACKNOWLEDGED",
        "RESOLVED",
        "CANCELLED",
        name="alert_status",
        native_enum=False,
    )
    alert_severity_enum = sa.Enum(
        "LOW",
        "MEDIUM",
        "HIGH",
        "CRITICAL",
        name="alert_severity",
        native_enum=False,
    )
    transition_event_enum = sa.Enum(
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
    intervention_type_enum = sa.Enum(
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
    patient_outcome_enum = sa.Enum(
        "IMPROVED",
        "STABLE",
        "DECLINED",
        "NO_CHANGE",
        "PATIENT_UNREACHABLE",
        name="alert_patient_outcome",
        native_enum=False,
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("patient_id", sa.String(length=200), nullable=False),
        sa.Column("rule_id", sa.String(length=200), nullable=False),
        sa.Column("observation_id", sa.String(length=200), nullable=False),
        sa.Column("metric_key", sa.String(length=200), nullable=False),
        sa.Column("severity", alert_severity_enum, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", alert_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sla_breach_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=200), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(length=200), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=200), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_text", sa.Text(), nullable=True),
        sa.Column("time_spent_minutes", sa.Integer(), nullable=True),
        sa.Column("intervention_type", intervention_type_enum, nullable=True),
        sa.Column("patient_outcome", patient_outcome_enum, nullable=True),
        sa.Column("cancelled_by", sa.String(length=200), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("snoozed_by", sa.String(length=200), nullable=True),
        sa.Column("snoozed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evidence", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACKNOWLEDGED', 'RESOLVED', 'CANCELLED')",
            name="ck_alerts_status",
        ),
        sa.CheckConstraint(
            "severity IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')",
            name="ck_alerts_severity",
        ),
        sa.CheckConstraint(
            "time_spent_minutes IS NULL OR time_spent_minutes >= 0",
            name="ck_alerts_time_spent_non_negative",
        ),
    )
    op.create_index(
        "uq_alerts_open_patient_rule",
        "alerts",
        ["patient_id", "rule_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_ALERT_PREDICATE),
        sqlite_where=sa.text(OPEN_ALERT_PREDICATE),
    )
    op.create_index(
        "ix_alerts_status_triggered_at",
        "alerts",
        ["status", "triggered_at"],
        unique=False,
    )
    op.create_index(
        "ix_alerts_patient_status",
        "alerts",
        ["patient_id", "status"],
        unique=False,
    )

    op.create_table(
        "alert_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("alert_id", sa.Uuid(as_uuid=True), sa.ForeignKey("alerts.id"), nullable=False),
        sa.Column("event_type", transition_event_enum, nullable=False),
        sa.Column("from_status", alert_status_enum, nullable=True),
        sa.Column("to_status", alert_status_enum, nullable=True),
        sa.Column("actor", sa.String(length=200), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "event_type IN ('create', 'claim', 'acknowledge', 'resolve', 'unclaim', "
            "'release', 'cancel', 'evidence', 'annotate', 'escalate', 'snooze', "
            "'reactivate')",
            name="ck_alert_transitions_event_type",
        ),
    )
    op.create_index(
        "ix_alert_transitions_alert_occurred",
        "alert_transitions",
        ["alert_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "alert_reevaluation_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("observation_id", sa.String(length=200), nullable=False, unique=True),
        sa.Column("patient_id", sa.String(length=200), nullable=False),
        sa.Column("metric_key", sa.String(length=200), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("reason", sa.String(length=200), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("attempts >= 0", name="ck_alert_reevaluation_attempts"),
    )
    op.create_index(
        "ix_alert_reevaluation_retry_at",
        "alert_reevaluation_queue",
        ["retry_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop alerting tables."""
    op.drop_index("ix_alert_reevaluation_retry_at", table_name="alert_reevaluation_queue")
    op.drop_table("alert_reevaluation_queue")
    op.drop_index("ix_alert_transitions_alert_occurred", table_name="alert_transitions")
    op.drop_table("alert_transitions")
    op.drop_index("ix_alerts_patient_status", table_name="alerts")
    op.drop_index("ix_alerts_status_triggered_at", table_name="alerts")
    op.drop_index("uq_alerts_open_patient_rule", table_name="alerts")
    op.drop_table("alerts")
