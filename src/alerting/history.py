"""Bounded metric history reads and authoritative observation series."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Iterable
from zoneinfo import ZoneInfo

from alerting.domain import AlertRule, Observation
from alerting.errors import UpstreamUnavailable
from alerting.interfaces import MetricHistoryReader, RuleCatalog
from alerting.timeouts import call_with_timeout
from time_utils import local_day

logger = logging.getLogger(__name__)

RULE_CATALOG = "rule_catalog"
METRIC_HISTORY = "metric_history"


class UpstreamClient:
    """Timeout-bounded access to the rule catalog and metric history."""

    def __init__(
        self,
        rule_catalog: RuleCatalog,
        history_reader: MetricHistoryReader,
        *,
        timeout_seconds: float,
    ) -> None:
        """Initialize the client with its collaborators and call timeout."""
        self._rule_catalog = rule_catalog
        self._history_reader = history_reader
        self._timeout_seconds = timeout_seconds

    def get_applicable_rules(self, patient_id: str) -> list[AlertRule]:
        """Fetch rules applicable to a patient.

        Raises:
            UpstreamUnavailable: If the catalog errors or times out.
        """
        result = self._call(
            RULE_CATALOG,
            self._rule_catalog.get_applicable_rules,
            patient_id,
        )
        return list(result or [])

    def get_history(
        self,
        patient_id: str,
        metric_key: str,
        from_date: datetime,
        to_date: datetime,
    ) -> list[Observation]:
        """Fetch observations for a patient metric within ``[from_date, to_date)``.

        Raises:
            UpstreamUnavailable: If the history store errors or times out.
        """
        result = self._call(
            METRIC_HISTORY,
            self._history_reader.get_observation_history,
            patient_id,
            metric_key,
            from_date,
            to_date,
        )
        return [
            observation
            for observation in result or []
            if observation.patient_id == patient_id and observation.metric_key == metric_key
        ]

    def _call(self, dependency: str, func, *args: object):
        """Invoke a collaborator, translating failures into ``UpstreamUnavailable``."""
        try:
            return call_with_timeout(
                func,
                *args,
                timeout_seconds=self._timeout_seconds,
                name=dependency,
            )
        except UpstreamUnavailable:
            raise
        except TimeoutError as exc:
            logger.warning(
                "Upstream call timed out: dependency=%s timeout_seconds=%s",
                dependency,
                self._timeout_seconds,
            )
            raise UpstreamUnavailable(dependency, str(exc), timed_out=True) from exc
        except Exception as exc:
            logger.warning("Upstream call failed: dependency=%s error=%s", dependency, exc)
            raise UpstreamUnavailable(
                dependency,
                f"{dependency} unavailable: {exc}",
            ) from exc


def resolve_authoritative(observations: Iterable[Observation]) -> list[Observation]:
    """Collapse duplicate recorded timestamps to the latest-ingested observation.

    Returns the surviving observations ordered by recorded time ascending.
    """
    latest: dict[datetime, Observation] = {}
    for observation in observations:
        current = latest.get(observation.recorded_at)
        if current is None or _supersedes(observation, current):
            latest[observation.recorded_at] = observation
    return sorted(latest.values(), key=lambda item: item.recorded_at)


def merge_observation(
    history: Iterable[Observation],
    observation: Observation,
) -> list[Observation]:
    """Merge a just-ingested observation into its history and resolve duplicates."""
    merged = [item for item in history if item.observation_id != observation.observation_id]
    merged.append(observation)
    return resolve_authoritative(merged)


def is_superseded(history: Iterable[Observation], observation: Observation) -> bool:
    """Return whether a later-ingested reading replaced ``observation`` at its recorded time."""
    same_instant = [item for item in history if item.recorded_at == observation.recorded_at]
    authoritative = merge_observation(same_instant, observation)
    return authoritative[0].observation_id != observation.observation_id


def bucket_by_day(
    observations: Iterable[Observation],
    tz: ZoneInfo,
) -> dict[date, list[Observation]]:
    """Group observations by clinic-local calendar day."""
    buckets: dict[date, list[Observation]] = defaultdict(list)
    for observation in observations:
        buckets[local_day(observation.recorded_at, tz)].append(observation)
    return dict(buckets)


def _supersedes(candidate: Observation, current: Observation) -> bool:
    """Return whether ``candidate`` replaces ``current`` for the same timestamp."""
    if candidate.ingested_at != current.ingested_at:
        return candidate.ingested_at > current.ingested_at
    return candidate.observation_id > current.observation_id
