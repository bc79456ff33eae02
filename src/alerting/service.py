"""Alerting service facade wiring evaluation, deduplication, and lifecycle."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from alerting.creation_service import AlertCreationService
from alerting.domain import Observation, RuleMatch
from alerting.errors import AlertNotFoundError, UpstreamUnavailable
from alerting.evaluator import ConditionEvaluator
from alerting.history import UpstreamClient
from alerting.interfaces import MetricHistoryReader, RuleCatalog, TaskLinker
from alerting.lifecycle import AlertLifecycleService
from alerting.reevaluation import ReevaluationQueue
from alerting.repository import AlertRepository
from alerting.retry_policy import (
    RetryPolicy,
    compute_retry_at,
    resolve_retry_policy,
    should_retry,
)
from alerting.task_linkage import TaskLinkageNotifier
from alerting.transition_repository import AlertTransitionRepository
from config import settings
from models import Alert, AlertTransition
from time_utils import to_utc

logger = logging.getLogger(__name__)


class AlertingService:
    """Public entry point for alert evaluation and the alert workflow.

    Collaborators are injected explicitly; the process composition root owns
    their lifetimes. ``sleep`` is injectable so backoff can be observed in
    tests without waiting.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rule_catalog: RuleCatalog,
        history_reader: MetricHistoryReader,
        *,
        task_linker: TaskLinker | None = None,
        retry_policy: RetryPolicy | None = None,
        upstream_timeout_seconds: float | None = None,
        relative_lookback_days: int | None = None,
        timezone_name: str | None = None,
        sla_minutes: Mapping[str, int] | None = None,
        requeue_delay_seconds: int | None = None,
        lifecycle: AlertLifecycleService | None = None,
        task_notifier: TaskLinkageNotifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service and its component collaborators."""
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._retry_policy = resolve_retry_policy(retry_policy)
        self._evaluator = ConditionEvaluator(
            UpstreamClient(
                rule_catalog,
                history_reader,
                timeout_seconds=(
                    upstream_timeout_seconds or settings.evaluation.upstream_timeout_seconds
                ),
            ),
            relative_lookback_days=relative_lookback_days,
            timezone_name=timezone_name,
        )
        self._creator = AlertCreationService(
            session_factory,
            sla_minutes=sla_minutes,
            now_provider=self._now_provider,
        )
        self._lifecycle = lifecycle or AlertLifecycleService(
            session_factory,
            now_provider=self._now_provider,
        )
        self._task_notifier = task_notifier or TaskLinkageNotifier(task_linker)
        self._queue = ReevaluationQueue(
            session_factory,
            requeue_delay_seconds=requeue_delay_seconds,
        )
        self._alerts = AlertRepository(session_factory)
        self._transitions = AlertTransitionRepository(session_factory)

    @property
    def reevaluation_queue(self) -> ReevaluationQueue:
        """Return the durable re-evaluation queue."""
        return self._queue

    def evaluate(self, observation: Observation, *, now: datetime | None = None) -> list[Alert]:
        """Evaluate a new observation and return only the alerts it created.

        Upstream outages are retried with bounded backoff. When retries are
        exhausted the observation is queued for re-evaluation and an empty list
        is returned.
        """
        timestamp = self._timestamp(now)
        matches = self._evaluate_with_retry(observation, timestamp)
        if matches is None:
            return []
        return self._apply_matches(matches, timestamp)

    def reprocess_reevaluation_queue(self, *, now: datetime | None = None) -> int:
        """Re-run due queued observations once each, returning how many completed."""
        timestamp = self._timestamp(now)
        processed = 0
        for entry in self._queue.list_due(timestamp):
            observation = Observation.from_payload(entry.payload)
            try:
                matches = self._evaluator.evaluate(observation)
            except UpstreamUnavailable as exc:
                self._queue.reschedule(
                    entry.id,
                    retry_at=compute_retry_at(
                        timestamp,
                        int(entry.attempts or 0) + 1,
                        backoff_strategy=self._retry_policy.backoff_strategy,
                        backoff_base_seconds=self._queue.retry_delay.total_seconds(),
                    ),
                    error=exc.message,
                )
                logger.warning(
                    "Re-evaluation still blocked: observation_id=%s attempts=%s code=%s",
                    observation.observation_id,
                    int(entry.attempts or 0) + 1,
                    exc.code,
                )
                continue
            self._apply_matches(matches, timestamp)
            self._queue.complete(entry.id)
            processed += 1
        if processed:
            logger.info("Reprocessed re-evaluation queue: processed=%s", processed)
        return processed

    def claim(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Claim an open, unclaimed alert."""
        return self._lifecycle.claim(alert_id, actor_id, now=now)

    def acknowledge(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Acknowledge a PENDING alert held by the actor."""
        return self._lifecycle.acknowledge(alert_id, actor_id, now=now)

    def resolve(
        self,
        alert_id: UUID,
        actor_id: str,
        resolution_text: str,
        time_spent_minutes: int | None = None,
        *,
        intervention_type: str | None = None,
        patient_outcome: str | None = None,
        now: datetime | None = None,
    ) -> Alert:
        """Resolve an alert held by the actor."""
        return self._lifecycle.resolve(
            alert_id,
            actor_id,
            resolution_text,
            time_spent_minutes=time_spent_minutes,
            intervention_type=intervention_type,
            patient_outcome=patient_outcome,
            now=now,
        )

    def unclaim(self, alert_id: UUID, actor_id: str, *, now: datetime | None = None) -> Alert:
        """Release the actor's claim on an open alert."""
        return self._lifecycle.unclaim(alert_id, actor_id, now=now)

    def cancel(
        self,
        alert_id: UUID,
        actor_id: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> Alert:
        """Cancel an open alert."""
        return self._lifecycle.cancel(alert_id, actor_id, reason, now=now)

    def annotate(
        self,
        alert_id: UUID,
        actor_id: str,
        note: str,
        *,
        now: datetime | None = None,
    ) -> AlertTransition:
        """Attach an audit-only note to an alert in any state."""
        return self._lifecycle.annotate(alert_id, actor_id, note, now=now)

    def snooze(
        self,
        alert_id: UUID,
        actor_id: str,
        minutes: int,
        *,
        now: datetime | None = None,
    ) -> Alert:
        """Defer an open alert without changing its status or claim."""
        return self._lifecycle.snooze(alert_id, actor_id, minutes, now=now)

    def reactivate_snoozed_alerts(self, *, now: datetime | None = None) -> list[UUID]:
        """Clear snoozes that have run out."""
        return self._lifecycle.reactivate_snoozed_alerts(now=now)

    def escalate_sla_breaches(self, *, now: datetime | None = None) -> list[UUID]:
        """Escalate open alerts past their SLA breach plus escalation delay."""
        return self._lifecycle.escalate_sla_breaches(now=now)

    def release_stale_claims(self, *, now: datetime | None = None) -> list[UUID]:
        """Release claims held past the claim timeout."""
        return self._lifecycle.release_stale_claims(now=now)

    def expire_stale_alerts(self, *, now: datetime | None = None) -> list[UUID]:
        """Cancel unclaimed PENDING alerts past the stale-alert window."""
        return self._lifecycle.expire_stale_alerts(now=now)

    def get_alert(self, alert_id: UUID) -> Alert:
        """Return an alert by id or raise ``AlertNotFoundError``."""
        alert = self._alerts.get_by_id(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def get_open_alert(self, patient_id: str, rule_id: str) -> Alert | None:
        """Return the open alert for a patient and rule, if any."""
        return self._alerts.get_open_alert(patient_id, rule_id)

    def list_open_alerts(self, *, patient_id: str | None = None) -> list[Alert]:
        """Return open alerts, most severe first."""
        return self._alerts.list_open(patient_id=patient_id)

    def list_transitions(self, alert_id: UUID) -> list[AlertTransition]:
        """Return the audit trail for an alert."""
        return self._transitions.list_for_alert(alert_id)

    def _evaluate_with_retry(
        self,
        observation: Observation,
        timestamp: datetime,
    ) -> list[RuleMatch] | None:
        """Evaluate with bounded retries; queue the observation when they run out."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._evaluator.evaluate(observation)
            except UpstreamUnavailable as exc:
                if not should_retry(attempt, self._retry_policy.max_attempts):
                    logger.warning(
                        "Evaluation retries exhausted: observation_id=%s attempts=%s code=%s",
                        observation.observation_id,
                        attempt,
                        exc.code,
                    )
                    self._queue.enqueue(
                        observation,
                        reason=exc.code,
                        error=exc.message,
                        now=timestamp,
                    )
                    return None
                delay = self._retry_policy.delay_after(attempt)
                logger.info(
                    "Retrying evaluation after upstream failure: observation_id=%s "
                    "attempt=%s delay_seconds=%s dependency=%s",
                    observation.observation_id,
                    attempt,
                    delay,
                    exc.dependency,
                )
                if delay > 0:
                    self._sleep(delay)

    def _apply_matches(self, matches: list[RuleMatch], timestamp: datetime) -> list[Alert]:
        """Create or suppress alerts for satisfied rules and request follow-up tasks."""
        created: list[Alert] = []
        for match in matches:
            result = self._creator.create_or_attach(match, now=timestamp)
            if not result.created:
                continue
            created.append(result.alert)
            self._task_notifier.notify(result.alert, match.rule)
        return created

    def _timestamp(self, now: datetime | None) -> datetime:
        return to_utc(now or self._now_provider())
