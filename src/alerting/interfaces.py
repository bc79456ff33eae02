"""Protocols for the external collaborators consumed by alerting."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from alerting.domain import AlertRule, FollowUpTaskRequest, Observation


class RuleCatalog(Protocol):
    """Source of alert rules applicable to a patient."""

    def get_applicable_rules(self, patient_id: str) -> list[AlertRule]:
        """Return active rules derived from the patient's condition enrollments."""
        ...


class MetricHistoryReader(Protocol):
    """Queryable per-patient, per-metric observation time series."""

    def get_observation_history(
        self,
        patient_id: str,
        metric_key: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Observation]:
        """Return observations in ``[from_date, to_date)`` ordered by recorded time."""
        ...


class TaskLinker(Protocol):
    """External task creator notified when an alert asks for follow-up."""

    def create_follow_up_task(self, request: FollowUpTaskRequest) -> None:
        """Request a follow-up task; the result is never read back."""
        ...
