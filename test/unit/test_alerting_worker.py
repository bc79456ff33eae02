"""Unit tests for the alerting maintenance CLI."""

from __future__ import annotations

from datetime import timedelta

import pytest

import alerting_worker
from alerting.creation_service import AlertCreationService
from alerting.lifecycle import AlertLifecycleService
from alerting.reevaluation import ReevaluationQueue
from test.helpers.alerting_stubs import BASE_TIME, make_match, make_observation


def _create_alert(session_factory, patient_id: str):
    """Persist a PENDING alert triggered at the base time."""
    creator = AlertCreationService(session_factory)
    return creator.create_or_attach(
        make_match(make_observation(9, patient_id=patient_id)),
        now=BASE_TIME,
    ).alert


def test_release_stale_claims_command(sqlite_session_factory, capsys) -> None:
    """The release command frees claims held past the timeout."""
    alert = _create_alert(sqlite_session_factory, "patient-1")
    AlertLifecycleService(sqlite_session_factory).claim(alert.id, "nurse-a", now=BASE_TIME)

    exit_code = alerting_worker.main(
        ["release-stale-claims"],
        session_factory=sqlite_session_factory,
    )

    assert exit_code == 0
    assert capsys.readouterr().out.strip() == "released=1"


def test_expire_stale_alerts_command(sqlite_session_factory, capsys) -> None:
    """The expire command cancels old unclaimed alerts."""
    _create_alert(sqlite_session_factory, "patient-1")
    _create_alert(sqlite_session_factory, "patient-2")

    exit_code = alerting_worker.main(
        ["expire-stale-alerts"],
        session_factory=sqlite_session_factory,
    )

    assert exit_code == 0
    assert capsys.readouterr().out.strip() == "expired=2"


def test_escalate_sla_breaches_command(sqlite_session_factory, capsys) -> None:
    """The escalate command escalates alerts long past their SLA breach."""
    _create_alert(sqlite_session_factory, "patient-1")

    exit_code = alerting_worker.main(
        ["escalate-sla-breaches"],
        session_factory=sqlite_session_factory,
    )

    assert exit_code == 0
    assert capsys.readouterr().out.strip() == "escalated=1"


def test_reactivate_snoozed_alerts_command(sqlite_session_factory, capsys) -> None:
    """The reactivate command clears snoozes that have run out."""
    alert = _create_alert(sqlite_session_factory, "patient-1")
    AlertLifecycleService(sqlite_session_factory).snooze(alert.id, "nurse-a", 30, now=BASE_TIME)

    exit_code = alerting_worker.main(
        ["reactivate-snoozed-alerts"],
        session_factory=sqlite_session_factory,
    )

    assert exit_code == 0
    assert capsys.readouterr().out.strip() == "reactivated=1"


def test_queue_status_command(sqlite_session_factory, capsys) -> None:
    """The status command reports queue depth and due entries."""
    queue = ReevaluationQueue(sqlite_session_factory, requeue_delay_seconds=60)
    observation = make_observation(9)
    queue.enqueue(observation, reason="upstream_timeout", now=BASE_TIME - timedelta(days=1))

    exit_code = alerting_worker.main(["queue-status"], session_factory=sqlite_session_factory)

    lines = capsys.readouterr().out.strip().splitlines()
    assert exit_code == 0
    assert lines[0] == "queued=1 due=1"
    assert lines[1].startswith(f"{observation.observation_id} patient=patient-1")
    assert "reason=upstream_timeout" in lines[1]


def test_unknown_command_exits_with_usage_error() -> None:
    """Unknown commands are rejected by argument parsing."""
    with pytest.raises(SystemExit) as excinfo:
        alerting_worker.main(["reindex"])

    assert excinfo.value.code == 2
