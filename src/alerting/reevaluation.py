"""Durable queue of observations awaiting re-evaluation after upstream outages."""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from alerting.domain import Observation
from config import settings
from models import AlertReevaluationRequest
from time_utils import to_utc

logger = logging.getLogger(__name__)


class ReevaluationQueue:
    """Persist observations whose evaluation could not complete.

    One entry exists per observation id; queueing an observation that is
    already queued refreshes its error and retry time instead of duplicating it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        requeue_delay_seconds: int | None = None,
    ) -> None:
        """Initialize the queue with a SQLAlchemy session factory."""
        self._session_factory = session_factory
        delay = (
            settings.evaluation.requeue_delay_seconds
            if requeue_delay_seconds is None
            else requeue_delay_seconds
        )
        self._retry_delay = timedelta(seconds=delay)

    @property
    def retry_delay(self) -> timedelta:
        """Return the delay before a newly queued entry becomes due."""
        return self._retry_delay

    def enqueue(
        self,
        observation: Observation,
        *,
        reason: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> AlertReevaluationRequest:
        """Queue an observation for later re-evaluation."""
        timestamp = to_utc(now or datetime.now(timezone.utc))

        def handler(session: Session) -> AlertReevaluationRequest:
            entry = _find_entry(session, observation.observation_id)
            if entry is None:
                entry = AlertReevaluationRequest(
                    observation_id=observation.observation_id,
                    patient_id=observation.patient_id,
                    metric_key=observation.metric_key,
                    payload=observation.to_payload(),
                    attempts=0,
                    queued_at=timestamp,
                )
                session.add(entry)
            entry.reason = reason
            entry.last_error = error
            entry.retry_at = timestamp + self._retry_delay
            session.flush()
            return entry

        try:
            entry = self._execute(handler)
        except IntegrityError:
            entry = self._execute(handler)
        logger.warning(
            "Queued observation for re-evaluation: observation_id=%s patient_id=%s reason=%s",
            observation.observation_id,
            observation.patient_id,
            reason,
        )
        return entry

    def list_due(self, now: datetime, *, limit: int | None = None) -> list[AlertReevaluationRequest]:
        """Return entries whose retry time has passed, oldest first."""
        timestamp = to_utc(now)

        def handler(session: Session) -> list[AlertReevaluationRequest]:
            query = (
                session.query(AlertReevaluationRequest)
                .filter(AlertReevaluationRequest.retry_at <= timestamp)
                .order_by(AlertReevaluationRequest.retry_at.asc(), AlertReevaluationRequest.id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return list(query.all())

        return self._execute(handler)

    def list_all(self) -> list[AlertReevaluationRequest]:
        """Return every queued entry, oldest first."""

        def handler(session: Session) -> list[AlertReevaluationRequest]:
            return list(
                session.query(AlertReevaluationRequest)
                .order_by(AlertReevaluationRequest.queued_at.asc(), AlertReevaluationRequest.id.asc())
                .all()
            )

        return self._execute(handler)

    def complete(self, entry_id: int) -> None:
        """Remove an entry after successful re-evaluation."""

        def handler(session: Session) -> None:
            session.query(AlertReevaluationRequest).filter(
                AlertReevaluationRequest.id == entry_id
            ).delete(synchronize_session=False)

        self._execute(handler)

    def reschedule(
        self,
        entry_id: int,
        *,
        retry_at: datetime,
        error: str | None,
    ) -> AlertReevaluationRequest:
        """Record a failed re-evaluation attempt and push the retry time out."""

        def handler(session: Session) -> AlertReevaluationRequest:
            entry = session.get(AlertReevaluationRequest, entry_id)
            if entry is None:
                raise ValueError(f"Re-evaluation entry not found: {entry_id}")
            entry.attempts = int(entry.attempts or 0) + 1
            entry.last_error = error
            entry.retry_at = to_utc(retry_at)
            session.flush()
            return entry

        return self._execute(handler)

    def _execute(self, handler):
        """Execute queue work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _find_entry(session: Session, observation_id: str) -> AlertReevaluationRequest | None:
    return (
        session.query(AlertReevaluationRequest)
        .filter(AlertReevaluationRequest.observation_id == observation_id)
        .one_or_none()
    )
