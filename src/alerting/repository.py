"""Repository helpers for alert queries."""

from __future__ import annotations

from contextlib import closing
from typing import Callable
from uuid import UUID

from sqlalchemy import case
from sqlalchemy.orm import Session

from alerting.domain import SEVERITY_RANK
from alerting.errors import AlertNotFoundError
from models import OPEN_ALERT_STATUSES, Alert

_SEVERITY_ORDER = case(SEVERITY_RANK, value=Alert.severity, else_=0)


class AlertRepository:
    """Read-side repository for alert records."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize repository with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def get_by_id(self, alert_id: UUID) -> Alert | None:
        """Fetch an alert by its primary key."""

        def handler(session: Session) -> Alert | None:
            return session.get(Alert, alert_id)

        return self._execute(handler)

    def get_open_alert(self, patient_id: str, rule_id: str) -> Alert | None:
        """Return the open alert for a patient and rule, if any."""

        def handler(session: Session) -> Alert | None:
            return find_open_alert(session, patient_id, rule_id)

        return self._execute(handler)

    def list_open(
        self,
        *,
        patient_id: str | None = None,
        limit: int | None = None,
    ) -> list[Alert]:
        """Return open alerts, most severe first, then oldest first."""

        def handler(session: Session) -> list[Alert]:
            query = session.query(Alert).filter(Alert.status.in_(OPEN_ALERT_STATUSES))
            if patient_id is not None:
                query = query.filter(Alert.patient_id == patient_id)
            query = query.order_by(_SEVERITY_ORDER.desc(), Alert.triggered_at.asc(), Alert.id.asc())
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


def fetch_alert(session: Session, alert_id: UUID) -> Alert:
    """Load an alert in the given session or raise ``AlertNotFoundError``."""
    alert = session.get(Alert, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)
    return alert


def find_open_alert(
    session: Session,
    patient_id: str,
    rule_id: str,
    *,
    for_update: bool = False,
) -> Alert | None:
    """Return the open alert for a patient and rule within a session."""
    query = session.query(Alert).filter(
        Alert.patient_id == patient_id,
        Alert.rule_id == rule_id,
        Alert.status.in_(OPEN_ALERT_STATUSES),
    )
    if for_update:
        query = query.with_for_update()
    return query.one_or_none()
