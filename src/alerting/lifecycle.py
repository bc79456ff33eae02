"""Alert lifecycle state machine with compare-and-set transitions and audit logging."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from alerting.errors import AlertConflictError
from alerting.repository import fetch_alert
from alerting.transition_repository import (
    SYSTEM_ACTOR,
    AlertTransitionCreateInput,
    create_transition_record,
)
from config import settings
from models import (
    OPEN_ALERT_STATUSES,
    Alert,
    AlertTransition,
    InterventionTypeEnum,
    PatientOutcomeEnum,
)
from time_utils import to_utc

logger = logging.getLogger(__name__)

GuardCheck = Callable[[Alert], None]


class AlertLifecycleService:
    """Apply claim, acknowledge, resolve, unclaim, cancel, and snooze transitions.

    Each transition reads the alert, checks its guard, then issues a single
    ``UPDATE ... WHERE`` whose predicate pins the status and claimant that were
    read. When a concurrent writer got there first the update touches no rows,
    the alert is reloaded, and the guard is re-checked to report the conflict.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        allow_resolve_from_pending: bool | None = None,
        resolution_note_min_length: int | None = None,
        claim_timeout_minutes: int | None = None,
        stale_alert_hours: int | None = None,
        max_snooze_minutes: int | None = None,
        escalation_delay_minutes: Mapping[str, int | None] | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the lifecycle service with policy overrides."""
        lifecycle_config = settings.lifecycle
        self._session_factory = session_factory
        self._allow_resolve_from_pending = (
            lifecycle_config.allow_resolve_from_pending
            if allow_resolve_from_pending is None
            else allow_resolve_from_pending
        )
        self._resolution_note_min_length = (
            resolution_note_min_length or lifecycle_config.resolution_note_min_length
        )
        self._claim_timeout = timedelta(
            minutes=claim_timeout_minutes or lifecycle_config.claim_timeout_minutes
        )
        self._stale_alert_hours = (
            lifecycle_config.stale_alert_hours if stale_alert_hours is None else stale_alert_hours
        )
        self._max_snooze_minutes = max_snooze_minutes or lifecycle_config.max_snooze_minutes
        self._escalation_delays = dict(
            settings.sla.escalation_delay_minutes
            if escalation_delay_minutes is None
            else escalation_delay_minutes
        )
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def claim(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Claim an open, unclaimed alert for ``actor_id``."""
        actor_id = _require_actor(actor_id)
        timestamp = self._timestamp(now)

        def check(alert: Alert) -> None:
            _require_open(alert, "claimed")
            if alert.claimed_by is not None:
                raise _conflict(alert, f"Alert is already claimed by {alert.claimed_by}")

        return self._transition(
            alert_id,
            event_type="claim",
            actor_id=actor_id,
            check=check,
            expect_claimant=None,
            values={"claimed_by": actor_id, "claimed_at": timestamp},
            timestamp=timestamp,
        )

    def acknowledge(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Acknowledge a PENDING alert claimed by ``actor_id``."""
        actor_id = _require_actor(actor_id)
        timestamp = self._timestamp(now)

        def check(alert: Alert) -> None:
            _require_open(alert, "acknowledged")
            if alert.status == "ACKNOWLEDGED":
                raise _conflict(alert, "Alert is already acknowledged")
            _require_claimant(alert, actor_id, "acknowledged")

        return self._transition(
            alert_id,
            event_type="acknowledge",
            actor_id=actor_id,
            check=check,
            expect_claimant=actor_id,
            values={
                "status": "ACKNOWLEDGED",
                "acknowledged_by": actor_id,
                "acknowledged_at": timestamp,
            },
            timestamp=timestamp,
        )

    def resolve(
        self,
        alert_id: UUID,
        actor_id: str,
        resolution_text: str,
        *,
        time_spent_minutes: int | None = None,
        intervention_type: str | None = None,
        patient_outcome: str | None = None,
        now: datetime | None = None,
    ) -> Alert:
        """Resolve an alert claimed by ``actor_id`` with resolution details."""
        actor_id = _require_actor(actor_id)
        note = (resolution_text or "").strip()
        if len(note) < self._resolution_note_min_length:
            raise ValueError(
                "Resolution text must be at least "
                f"{self._resolution_note_min_length} characters."
            )
        if time_spent_minutes is not None and time_spent_minutes < 0:
            raise ValueError("time_spent_minutes must be >= 0.")
        if intervention_type is not None and intervention_type not in InterventionTypeEnum.enums:
            raise ValueError(f"Unsupported intervention type: {intervention_type}")
        if patient_outcome is not None and patient_outcome not in PatientOutcomeEnum.enums:
            raise ValueError(f"Unsupported patient outcome: {patient_outcome}")
        timestamp = self._timestamp(now)

        def check(alert: Alert) -> None:
            _require_open(alert, "resolved")
            if alert.status == "PENDING" and not self._allow_resolve_from_pending:
                raise _conflict(alert, "Alert must be acknowledged before it can be resolved")
            _require_claimant(alert, actor_id, "resolved")

        return self._transition(
            alert_id,
            event_type="resolve",
            actor_id=actor_id,
            check=check,
            expect_claimant=actor_id,
            values={
                "status": "RESOLVED",
                "resolved_by": actor_id,
                "resolved_at": timestamp,
                "resolution_text": note,
                "time_spent_minutes": time_spent_minutes,
                "intervention_type": intervention_type,
                "patient_outcome": patient_outcome,
            },
            timestamp=timestamp,
            reason=note,
            context={
                "time_spent_minutes": time_spent_minutes,
                "intervention_type": intervention_type,
                "patient_outcome": patient_outcome,
            },
        )

    def unclaim(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Release ``actor_id``'s claim, leaving the status unchanged."""
        actor_id = _require_actor(actor_id)
        timestamp = self._timestamp(now)

        def check(alert: Alert) -> None:
            _require_open(alert, "unclaimed")
            _require_claimant(alert, actor_id, "unclaimed")

        return self._transition(
            alert_id,
            event_type="unclaim",
            actor_id=actor_id,
            check=check,
            expect_claimant=actor_id,
            values={"claimed_by": None, "claimed_at": None},
            timestamp=timestamp,
        )

    def cancel(
        self,
        alert_id: UUID,
        actor_id: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> Alert:
        """Cancel an open alert; no claim is required."""
        actor_id = _require_actor(actor_id)
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("Cancellation reason is required.")
        timestamp = self._timestamp(now)

        def check(alert: Alert) -> None:
            _require_open(alert, "cancelled")

        return self._transition(
            alert_id,
            event_type="cancel",
            actor_id=actor_id,
            check=check,
            expect_claimant=_ANY_CLAIMANT,
            values={
                "status": "CANCELLED",
                "cancelled_by": actor_id,
                "cancelled_at": timestamp,
                "cancellation_reason": reason,
            },
            timestamp=timestamp,
            reason=reason,
        )

    def annotate(
        self,
        alert_id: UUID,
        actor_id: str,
        note: str,
        *,
        now: datetime | None = None,
    ) -> AlertTransition:
        """Append an audit-only note; allowed in every state, including terminal ones."""
        actor_id = _require_actor(actor_id)
        note = (note or "").strip()
        if not note:
            raise ValueError("Annotation note is required.")
        timestamp = self._timestamp(now)

        def handler(session: Session) -> AlertTransition:
            alert = fetch_alert(session, alert_id)
            return create_transition_record(
                session,
                AlertTransitionCreateInput(
                    alert_id=alert.id,
                    event_type="annotate",
                    actor=actor_id,
                    from_status=alert.status,
                    to_status=alert.status,
                    reason=note,
                    occurred_at=timestamp,
                ),
            )

        return self._execute(handler)

    def snooze(
        self,
        alert_id: UUID,
        actor_id: str,
        minutes: int,
        *,
        now: datetime | None = None,
    ) -> Alert:
        """Defer an open alert for ``minutes``; status and claim are left as they are."""
        actor_id = _require_actor(actor_id)
        if minutes < 1 or minutes > self._max_snooze_minutes:
            raise ValueError(
                f"Snooze duration must be between 1 and {self._max_snooze_minutes} minutes."
            )
        timestamp = self._timestamp(now)
        snoozed_until = timestamp + timedelta(minutes=minutes)

        def check(alert: Alert) -> None:
            _require_open(alert, "snoozed")

        return self._transition(
            alert_id,
            event_type="snooze",
            actor_id=actor_id,
            check=check,
            expect_claimant=_ANY_CLAIMANT,
            values={
                "snoozed_by": actor_id,
                "snoozed_at": timestamp,
                "snoozed_until": snoozed_until,
            },
            timestamp=timestamp,
            context={"snooze_minutes": minutes, "snoozed_until": snoozed_until.isoformat()},
        )

    def release_stale_claims(self, *, now: datetime | None = None) -> list[UUID]:
        """Release claims on open alerts held longer than the claim timeout."""
        timestamp = self._timestamp(now)
        cutoff = timestamp - self._claim_timeout

        def handler(session: Session) -> list[UUID]:
            stale = (
                session.query(Alert)
                .filter(
                    Alert.status.in_(OPEN_ALERT_STATUSES),
                    Alert.claimed_by.is_not(None),
                    Alert.claimed_at < cutoff,
                )
                .order_by(Alert.claimed_at.asc())
                .all()
            )
            released: list[UUID] = []
            for alert in stale:
                result = session.execute(
                    update(Alert)
                    .where(
                        Alert.id == alert.id,
                        Alert.status == alert.status,
                        Alert.claimed_by == alert.claimed_by,
                        Alert.claimed_at < cutoff,
                    )
                    .values(claimed_by=None, claimed_at=None, updated_at=timestamp)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                create_transition_record(
                    session,
                    AlertTransitionCreateInput(
                        alert_id=alert.id,
                        event_type="release",
                        actor=SYSTEM_ACTOR,
                        from_status=alert.status,
                        to_status=alert.status,
                        reason="claim_timeout",
                        context={
                            "previous_claimant": alert.claimed_by,
                            "claim_timeout_minutes": int(self._claim_timeout.total_seconds() // 60),
                        },
                        occurred_at=timestamp,
                    ),
                )
                released.append(alert.id)
            return released

        released = self._execute(handler)
        if released:
            logger.info("Released stale alert claims: count=%s", len(released))
        return released

    def expire_stale_alerts(self, *, now: datetime | None = None) -> list[UUID]:
        """Cancel unclaimed PENDING alerts older than the stale-alert window."""
        if self._stale_alert_hours <= 0:
            return []
        timestamp = self._timestamp(now)
        cutoff = timestamp - timedelta(hours=self._stale_alert_hours)
        reason = (
            f"Auto-resolved: Alert expired after {self._stale_alert_hours} hours without action"
        )

        def handler(session: Session) -> list[UUID]:
            stale = (
                session.query(Alert)
                .filter(
                    Alert.status == "PENDING",
                    Alert.claimed_by.is_(None),
                    Alert.triggered_at < cutoff,
                )
                .order_by(Alert.triggered_at.asc())
                .all()
            )
            expired: list[UUID] = []
            for alert in stale:
                result = session.execute(
                    update(Alert)
                    .where(
                        Alert.id == alert.id,
                        Alert.status == "PENDING",
                        Alert.claimed_by.is_(None),
                    )
                    .values(
                        status="CANCELLED",
                        cancelled_by=SYSTEM_ACTOR,
                        cancelled_at=timestamp,
                        cancellation_reason=reason,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                create_transition_record(
                    session,
                    AlertTransitionCreateInput(
                        alert_id=alert.id,
                        event_type="cancel",
                        actor=SYSTEM_ACTOR,
                        from_status="PENDING",
                        to_status="CANCELLED",
                        reason=reason,
                        occurred_at=timestamp,
                    ),
                )
                expired.append(alert.id)
            return expired

        expired = self._execute(handler)
        if expired:
            logger.info("Expired stale alerts: count=%s", len(expired))
        return expired

    def reactivate_snoozed_alerts(self, *, now: datetime | None = None) -> list[UUID]:
        """Clear the snooze on open alerts whose snooze period has ended."""
        timestamp = self._timestamp(now)

        def handler(session: Session) -> list[UUID]:
            due = (
                session.query(Alert)
                .filter(
                    Alert.status.in_(OPEN_ALERT_STATUSES),
                    Alert.snoozed_until.is_not(None),
                    Alert.snoozed_until <= timestamp,
                )
                .order_by(Alert.snoozed_until.asc())
                .all()
            )
            reactivated: list[UUID] = []
            for alert in due:
                result = session.execute(
                    update(Alert)
                    .where(
                        Alert.id == alert.id,
                        Alert.status.in_(OPEN_ALERT_STATUSES),
                        Alert.snoozed_until.is_not(None),
                        Alert.snoozed_until <= timestamp,
                    )
                    .values(
                        snoozed_by=None,
                        snoozed_at=None,
                        snoozed_until=None,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                create_transition_record(
                    session,
                    AlertTransitionCreateInput(
                        alert_id=alert.id,
                        event_type="reactivate",
                        actor=SYSTEM_ACTOR,
                        from_status=alert.status,
                        to_status=alert.status,
                        reason="snooze_expired",
                        context={
                            "snoozed_by": alert.snoozed_by,
                            "snoozed_until": alert.snoozed_until.isoformat(),
                        },
                        occurred_at=timestamp,
                    ),
                )
                reactivated.append(alert.id)
            return reactivated

        reactivated = self._execute(handler)
        if reactivated:
            logger.info("Reactivated snoozed alerts: count=%s", len(reactivated))
        return reactivated

    def escalate_sla_breaches(self, *, now: datetime | None = None) -> list[UUID]:
        """Escalate open alerts once their SLA breach is older than the severity's delay.

        Severities without a configured delay are never escalated, and an
        alert is escalated at most once.
        """
        timestamp = self._timestamp(now)

        def handler(session: Session) -> list[UUID]:
            breached = (
                session.query(Alert)
                .filter(
                    Alert.status.in_(OPEN_ALERT_STATUSES),
                    Alert.escalated_at.is_(None),
                    Alert.sla_breach_at.is_not(None),
                    Alert.sla_breach_at < timestamp,
                )
                .order_by(Alert.sla_breach_at.asc())
                .all()
            )
            escalated: list[UUID] = []
            for alert in breached:
                delay_minutes = self._escalation_delays.get(alert.severity)
                if delay_minutes is None:
                    continue
                if timestamp < alert.sla_breach_at + timedelta(minutes=delay_minutes):
                    continue
                minutes_overdue = int((timestamp - alert.sla_breach_at).total_seconds() // 60)
                reason = f"Automatic escalation: SLA breach ({minutes_overdue} minutes overdue)"
                result = session.execute(
                    update(Alert)
                    .where(
                        Alert.id == alert.id,
                        Alert.status.in_(OPEN_ALERT_STATUSES),
                        Alert.escalated_at.is_(None),
                    )
                    .values(
                        escalated_at=timestamp,
                        escalation_level=1,
                        escalation_reason=reason,
                        updated_at=timestamp,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                create_transition_record(
                    session,
                    AlertTransitionCreateInput(
                        alert_id=alert.id,
                        event_type="escalate",
                        actor=SYSTEM_ACTOR,
                        from_status=alert.status,
                        to_status=alert.status,
                        reason=reason,
                        context={
                            "severity": alert.severity,
                            "escalation_level": 1,
                            "minutes_overdue": minutes_overdue,
                        },
                        occurred_at=timestamp,
                    ),
                )
                escalated.append(alert.id)
            return escalated

        escalated = self._execute(handler)
        if escalated:
            logger.info("Escalated SLA-breached alerts: count=%s", len(escalated))
        return escalated

    def _transition(
        self,
        alert_id: UUID,
        *,
        event_type: str,
        actor_id: str,
        check: GuardCheck,
        expect_claimant: object,
        values: Mapping[str, object],
        timestamp: datetime,
        reason: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> Alert:
        """Run a guarded compare-and-set transition and write its audit record."""

        def handler(session: Session) -> Alert:
            alert = fetch_alert(session, alert_id)
            check(alert)
            from_status = alert.status
            statement = update(Alert).where(Alert.id == alert_id, Alert.status == from_status)
            if expect_claimant is None:
                statement = statement.where(Alert.claimed_by.is_(None))
            elif expect_claimant is not _ANY_CLAIMANT:
                statement = statement.where(Alert.claimed_by == expect_claimant)
            result = session.execute(
                statement.values(**values, updated_at=timestamp).execution_options(
                    synchronize_session=False
                )
            )
            if result.rowcount != 1:
                raise _diagnose_conflict(session, alert, check)
            updated = _reload(session, alert)
            create_transition_record(
                session,
                AlertTransitionCreateInput(
                    alert_id=alert_id,
                    event_type=event_type,
                    actor=actor_id,
                    from_status=from_status,
                    to_status=updated.status,
                    reason=reason,
                    context=context,
                    occurred_at=timestamp,
                ),
            )
            return updated

        alert = self._execute(handler)
        logger.info(
            "Alert transition applied: alert_id=%s event=%s actor=%s status=%s",
            alert_id,
            event_type,
            actor_id,
            alert.status,
        )
        return alert

    def _timestamp(self, now: datetime | None) -> datetime:
        return to_utc(now or self._now_provider())

    def _execute(self, handler):
        """Execute lifecycle work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


_ANY_CLAIMANT = object()


def _reload(session: Session, alert: Alert) -> Alert:
    """Discard the stale identity-map copy and load the row as stored."""
    alert_id = alert.id
    session.expunge(alert)
    return fetch_alert(session, alert_id)


def _diagnose_conflict(session: Session, alert: Alert, check: GuardCheck) -> AlertConflictError:
    """Explain why a compare-and-set update matched no rows."""
    current = _reload(session, alert)
    try:
        check(current)
    except AlertConflictError as exc:
        logger.info(
            "Alert transition conflict: alert_id=%s status=%s claimed_by=%s",
            current.id,
            current.status,
            current.claimed_by,
        )
        return exc
    return _conflict(current, "Alert was modified concurrently; retry the operation")


def _require_actor(actor_id: str) -> str:
    actor = (actor_id or "").strip()
    if not actor:
        raise ValueError("actor_id is required.")
    return actor


def _require_open(alert: Alert, action: str) -> None:
    """Reject transitions on terminal alerts."""
    if alert.status == "RESOLVED":
        raise _conflict(alert, f"Alert is already resolved and cannot be {action}")
    if alert.status == "CANCELLED":
        raise _conflict(alert, f"Alert is already cancelled and cannot be {action}")


def _require_claimant(alert: Alert, actor_id: str, action: str) -> None:
    """Reject transitions by anyone other than the current claimant."""
    if alert.claimed_by is None:
        raise _conflict(alert, f"Alert must be claimed before it can be {action}")
    if alert.claimed_by != actor_id:
        raise _conflict(alert, f"Alert is already claimed by {alert.claimed_by}")


def _conflict(alert: Alert, message: str) -> AlertConflictError:
    return AlertConflictError(
        message,
        alert_id=alert.id,
        current_status=alert.status,
        claimed_by=alert.claimed_by,
    )
