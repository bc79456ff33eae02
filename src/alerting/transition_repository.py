"""Repository helpers for alert lifecycle audit records."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from models import AlertTransition
from time_utils import to_utc

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AlertTransitionCreateInput:
    """Input payload for creating an alert transition audit record."""

    alert_id: UUID
    event_type: str
    actor: str
    from_status: str | None = None
    to_status: str | None = None
    reason: str | None = None
    context: Mapping[str, object] | None = None
    occurred_at: datetime | None = None


class AlertTransitionRepository:
    """Repository for alert transition audit records."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def list_for_alert(
        self,
        alert_id: UUID,
        *,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[AlertTransition]:
        """Return transition history for an alert in the order it happened."""

        def handler(session: Session) -> list[AlertTransition]:
            query = session.query(AlertTransition).filter(AlertTransition.alert_id == alert_id)
            if event_type is not None:
                query = query.filter(AlertTransition.event_type == event_type)
            query = query.order_by(AlertTransition.occurred_at.asc(), AlertTransition.id.asc())
            if limit is not None:
                query = query.limit(limit)
            return list(query.all())

        return self._execute(handler)

    def _execute(self, handler):
        """Execute repository work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def create_transition_record(
    session: Session,
    payload: AlertTransitionCreateInput,
    *,
    now: datetime | None = None,
) -> AlertTransition:
    """Create an alert transition using an existing session."""
    occurred_at = to_utc(payload.occurred_at or now or datetime.now(timezone.utc))
    transition = AlertTransition(
        alert_id=payload.alert_id,
        event_type=payload.event_type,
        from_status=payload.from_status,
        to_status=payload.to_status,
        actor=payload.actor,
        reason=payload.reason,
        context=dict(payload.context) if payload.context is not None else None,
        occurred_at=occurred_at,
    )
    session.add(transition)
    session.flush()
    return transition
