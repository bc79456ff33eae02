"""Alert creation with open-alert deduplication backed by a partial unique index."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from alerting.domain import RuleMatch
from alerting.repository import find_open_alert
from alerting.sla import build_alert_message, compute_sla_breach_at
from alerting.transition_repository import (
    SYSTEM_ACTOR,
    AlertTransitionCreateInput,
    create_transition_record,
)
from models import Alert
from time_utils import to_utc

logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 3


@dataclass(frozen=True)
class AlertCreationResult:
    """Outcome of creating or suppressing an alert for one satisfied rule."""

    status: Literal["created", "suppressed"]
    alert: Alert

    @property
    def created(self) -> bool:
        """Return whether a new alert was inserted."""
        return self.status == "created"


class AlertCreationService:
    """Create one open alert per (patient, rule), attaching repeats as evidence.

    The open-alert lookup is a fast path only. Two evaluators racing past it
    are arbitrated by the ``uq_alerts_open_patient_rule`` partial unique index:
    the loser's insert fails, its transaction is rolled back, and its
    observation is attached to the winner instead.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        sla_minutes: Mapping[str, int] | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the creator with a SQLAlchemy session factory."""
        self._session_factory = session_factory
        self._sla_minutes = sla_minutes
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def create_or_attach(
        self,
        match: RuleMatch,
        *,
        now: datetime | None = None,
    ) -> AlertCreationResult:
        """Create a PENDING alert for a satisfied rule or attach to the open one."""
        timestamp = to_utc(now or self._now_provider())
        last_error: IntegrityError | None = None
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            existing = self._attach_to_open_alert(match, timestamp)
            if existing is not None:
                return AlertCreationResult(status="suppressed", alert=existing)
            try:
                alert = self._insert_alert(match, timestamp)
            except IntegrityError as exc:
                last_error = exc
                logger.info(
                    "Lost alert creation race: patient_id=%s rule_id=%s attempt=%s",
                    match.context.observation.patient_id,
                    match.rule.rule_id,
                    attempt,
                )
                continue
            logger.info(
                "Created alert: alert_id=%s patient_id=%s rule_id=%s severity=%s",
                alert.id,
                alert.patient_id,
                alert.rule_id,
                alert.severity,
            )
            return AlertCreationResult(status="created", alert=alert)
        assert last_error is not None
        raise last_error

    def _attach_to_open_alert(self, match: RuleMatch, timestamp: datetime) -> Alert | None:
        """Attach the observation to the open alert for the rule, if one exists."""
        observation = match.context.observation

        def handler(session: Session) -> Alert | None:
            alert = find_open_alert(
                session,
                observation.patient_id,
                match.rule.rule_id,
                for_update=True,
            )
            if alert is None:
                return None
            attach_evidence(session, alert, match, now=timestamp)
            logger.info(
                "Suppressed duplicate alert: alert_id=%s observation_id=%s rule_id=%s",
                alert.id,
                observation.observation_id,
                match.rule.rule_id,
            )
            return alert

        return self._execute(handler)

    def _insert_alert(self, match: RuleMatch, timestamp: datetime) -> Alert:
        """Insert a new PENDING alert and its creation audit record."""
        rule = match.rule
        observation = match.context.observation

        def handler(session: Session) -> Alert:
            observation_payload = observation.to_payload()
            alert = Alert(
                patient_id=observation.patient_id,
                rule_id=rule.rule_id,
                observation_id=observation.observation_id,
                metric_key=observation.metric_key,
                severity=rule.severity,
                priority=rule.priority,
                status="PENDING",
                message=build_alert_message(rule, observation),
                triggered_at=timestamp,
                sla_breach_at=compute_sla_breach_at(
                    rule.severity,
                    timestamp,
                    sla_minutes=self._sla_minutes,
                ),
                evidence={
                    "rule_name": rule.name,
                    "triggering_observation": observation_payload,
                    "context": match.context.to_payload(),
                    "latest_observation": observation_payload,
                    "supporting_observation_ids": [observation.observation_id],
                    "occurrence_count": 1,
                },
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(alert)
            session.flush()
            create_transition_record(
                session,
                AlertTransitionCreateInput(
                    alert_id=alert.id,
                    event_type="create",
                    actor=SYSTEM_ACTOR,
                    to_status="PENDING",
                    context={"observation_id": observation.observation_id},
                    occurred_at=timestamp,
                ),
            )
            return alert

        return self._execute(handler)

    def _execute(self, handler):
        """Execute creation work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def attach_evidence(
    session: Session,
    alert: Alert,
    match: RuleMatch,
    *,
    now: datetime,
) -> Alert:
    """Record a further qualifying observation on an existing open alert."""
    observation = match.context.observation
    evidence = dict(alert.evidence or {})
    supporting = list(evidence.get("supporting_observation_ids") or [])
    if observation.observation_id not in supporting:
        supporting.append(observation.observation_id)
    evidence["supporting_observation_ids"] = supporting
    evidence["occurrence_count"] = len(supporting)
    evidence["latest_observation"] = observation.to_payload()
    evidence["latest_context"] = match.context.to_payload()
    alert.evidence = evidence
    alert.updated_at = now
    session.flush()
    create_transition_record(
        session,
        AlertTransitionCreateInput(
            alert_id=alert.id,
            event_type="evidence",
            actor=SYSTEM_ACTOR,
            from_status=alert.status,
            to_status=alert.status,
            context={"observation_id": observation.observation_id},
            occurred_at=now,
        ),
    )
    return alert
