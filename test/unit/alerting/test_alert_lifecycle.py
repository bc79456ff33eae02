"""Unit tests for the alert claim/acknowledge/resolve workflow."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from alerting.creation_service import AlertCreationService
from alerting.errors import AlertConflictError, AlertNotFoundError
from alerting.lifecycle import AlertLifecycleService
from alerting.transition_repository import AlertTransitionRepository
from models import Alert
from test.helpers.alerting_stubs import BASE_TIME, make_match, make_observation, make_rule

RESOLUTION_NOTE = "Called patient, pain managed with medication change"
SLA_MINUTES = {"CRITICAL": 30, "HIGH": 120, "MEDIUM": 480, "LOW": 1440}
ESCALATION_DELAYS = {"CRITICAL": 30, "HIGH": 120, "MEDIUM": 240, "LOW": None}


def _create_alert(session_factory, *, patient_id: str = "patient-1", now=BASE_TIME):
    """Create a PENDING alert and return it."""
    creator = AlertCreationService(session_factory)
    return creator.create_or_attach(
        make_match(make_observation(9, patient_id=patient_id)),
        now=now,
    ).alert


def _lifecycle(session_factory, **overrides) -> AlertLifecycleService:
    """Build a lifecycle service with deterministic policy values."""
    params = {
        "allow_resolve_from_pending": True,
        "resolution_note_min_length": 10,
        "claim_timeout_minutes": 60,
        "stale_alert_hours": 72,
    }
    params.update(overrides)
    return AlertLifecycleService(session_factory, **params)


def test_claim_acknowledge_resolve_flow(sqlite_session_factory) -> None:
    """The happy path records actors and timestamps at each step."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)

    claimed = lifecycle.claim(alert.id, "nurse-a", now=BASE_TIME + timedelta(minutes=1))
    acknowledged = lifecycle.acknowledge(alert.id, "nurse-a", now=BASE_TIME + timedelta(minutes=2))
    resolved = lifecycle.resolve(
        alert.id,
        "nurse-a",
        RESOLUTION_NOTE,
        time_spent_minutes=15,
        intervention_type="PHONE_CALL",
        patient_outcome="IMPROVED",
        now=BASE_TIME + timedelta(minutes=20),
    )

    assert claimed.status == "PENDING"
    assert claimed.claimed_by == "nurse-a"
    assert claimed.claimed_at == BASE_TIME + timedelta(minutes=1)
    assert acknowledged.status == "ACKNOWLEDGED"
    assert acknowledged.acknowledged_by == "nurse-a"
    assert resolved.status == "RESOLVED"
    assert resolved.resolved_by == "nurse-a"
    assert resolved.resolved_at == BASE_TIME + timedelta(minutes=20)
    assert resolved.resolution_text == RESOLUTION_NOTE
    assert resolved.time_spent_minutes == 15
    assert resolved.intervention_type == "PHONE_CALL"
    assert resolved.patient_outcome == "IMPROVED"


def test_claim_conflict_names_current_claimant(sqlite_session_factory) -> None:
    """A second claim fails with a conflict naming the holder."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")

    with pytest.raises(AlertConflictError) as excinfo:
        lifecycle.claim(alert.id, "nurse-b")

    assert excinfo.value.message == "Alert is already claimed by nurse-a"
    assert excinfo.value.claimed_by == "nurse-a"
    assert excinfo.value.current_status == "PENDING"


def test_acknowledge_requires_claimant(sqlite_session_factory) -> None:
    """Only the claimant may acknowledge, and an unclaimed alert cannot be acknowledged."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)

    with pytest.raises(AlertConflictError, match="must be claimed before it can be acknowledged"):
        lifecycle.acknowledge(alert.id, "nurse-a")

    lifecycle.claim(alert.id, "nurse-a")
    with pytest.raises(AlertConflictError, match="already claimed by nurse-a"):
        lifecycle.acknowledge(alert.id, "nurse-b")


def test_acknowledge_twice_conflicts(sqlite_session_factory) -> None:
    """Acknowledging an acknowledged alert is rejected."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")
    lifecycle.acknowledge(alert.id, "nurse-a")

    with pytest.raises(AlertConflictError, match="already acknowledged"):
        lifecycle.acknowledge(alert.id, "nurse-a")


def test_resolve_from_pending_allowed_for_claimant(sqlite_session_factory) -> None:
    """With the default policy the claimant may resolve without acknowledging."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")

    resolved = lifecycle.resolve(alert.id, "nurse-a", RESOLUTION_NOTE)

    assert resolved.status == "RESOLVED"
    assert resolved.acknowledged_by is None


def test_resolve_from_pending_rejected_when_policy_disabled(sqlite_session_factory) -> None:
    """With the policy off, a PENDING alert must be acknowledged first."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory, allow_resolve_from_pending=False)
    lifecycle.claim(alert.id, "nurse-a")

    with pytest.raises(AlertConflictError, match="must be acknowledged before it can be resolved"):
        lifecycle.resolve(alert.id, "nurse-a", RESOLUTION_NOTE)


def test_resolve_by_non_claimant_conflicts(sqlite_session_factory) -> None:
    """Only the claimant may resolve."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")
    lifecycle.acknowledge(alert.id, "nurse-a")

    with pytest.raises(AlertConflictError, match="already claimed by nurse-a"):
        lifecycle.resolve(alert.id, "nurse-b", RESOLUTION_NOTE)


@pytest.mark.parametrize(
    ("note", "kwargs"),
    [
        ("too short", {}),
        ("   ", {}),
        (RESOLUTION_NOTE, {"time_spent_minutes": -5}),
        (RESOLUTION_NOTE, {"intervention_type": "CARRIER_PIGEON"}),
        (RESOLUTION_NOTE, {"patient_outcome": "CURED"}),
    ],
)
def test_resolve_validates_resolution_details(sqlite_session_factory, note, kwargs) -> None:
    """Invalid resolution details are rejected before any state change."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")

    with pytest.raises(ValueError):
        lifecycle.resolve(alert.id, "nurse-a", note, **kwargs)

    transitions = AlertTransitionRepository(sqlite_session_factory).list_for_alert(alert.id)
    assert [item.event_type for item in transitions] == ["create", "claim"]


@pytest.mark.parametrize(
    ("terminal", "message"),
    [
        ("resolve", "already resolved"),
        ("cancel", "already cancelled"),
    ],
)
def test_terminal_alerts_reject_transitions(sqlite_session_factory, terminal, message) -> None:
    """Resolved and cancelled alerts accept no further lifecycle transitions."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")
    if terminal == "resolve":
        lifecycle.resolve(alert.id, "nurse-a", RESOLUTION_NOTE)
    else:
        lifecycle.cancel(alert.id, "nurse-a", "Duplicate of phone triage")

    with pytest.raises(AlertConflictError, match=message):
        lifecycle.claim(alert.id, "nurse-b")
    with pytest.raises(AlertConflictError, match=message):
        lifecycle.acknowledge(alert.id, "nurse-a")
    with pytest.raises(AlertConflictError, match=message):
        lifecycle.resolve(alert.id, "nurse-a", RESOLUTION_NOTE)
    with pytest.raises(AlertConflictError, match=message):
        lifecycle.unclaim(alert.id, "nurse-a")
    with pytest.raises(AlertConflictError, match=message):
        lifecycle.cancel(alert.id, "nurse-a", "Second thoughts")


def test_cancel_requires_reason_but_not_claim(sqlite_session_factory) -> None:
    """Any actor may cancel an open alert when they give a reason."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)

    with pytest.raises(ValueError):
        lifecycle.cancel(alert.id, "nurse-b", "  ")

    cancelled = lifecycle.cancel(alert.id, "nurse-b", "Patient admitted to hospital")

    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_by == "nurse-b"
    assert cancelled.cancellation_reason == "Patient admitted to hospital"


def test_unclaim_returns_alert_to_the_pool(sqlite_session_factory) -> None:
    """Unclaiming clears the claim without changing status."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")
    lifecycle.acknowledge(alert.id, "nurse-a")

    with pytest.raises(AlertConflictError):
        lifecycle.unclaim(alert.id, "nurse-b")
    released = lifecycle.unclaim(alert.id, "nurse-a")
    reclaimed = lifecycle.claim(alert.id, "nurse-b")

    assert released.status == "ACKNOWLEDGED"
    assert released.claimed_by is None
    assert reclaimed.claimed_by == "nurse-b"


def test_annotate_is_allowed_on_terminal_alerts(sqlite_session_factory) -> None:
    """Notes are audit-only and accepted after resolution."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a")
    lifecycle.resolve(alert.id, "nurse-a", RESOLUTION_NOTE)

    transition = lifecycle.annotate(alert.id, "dr-b", "Reviewed at weekly huddle")

    assert transition.event_type == "annotate"
    assert transition.from_status == "RESOLVED"
    assert transition.to_status == "RESOLVED"
    assert transition.reason == "Reviewed at weekly huddle"


def test_unknown_alert_raises_not_found(sqlite_session_factory) -> None:
    """Transitions on a missing alert raise AlertNotFoundError."""
    lifecycle = _lifecycle(sqlite_session_factory)

    with pytest.raises(AlertNotFoundError):
        lifecycle.claim(uuid4(), "nurse-a")


def test_blank_actor_is_rejected(sqlite_session_factory) -> None:
    """Every transition requires an actor."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)

    with pytest.raises(ValueError):
        lifecycle.claim(alert.id, " ")


def test_transitions_are_audited_in_order(sqlite_session_factory) -> None:
    """Every successful transition writes one audit record with from/to status."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.claim(alert.id, "nurse-a", now=BASE_TIME + timedelta(minutes=1))
    lifecycle.acknowledge(alert.id, "nurse-a", now=BASE_TIME + timedelta(minutes=2))
    lifecycle.resolve(
        alert.id,
        "nurse-a",
        RESOLUTION_NOTE,
        time_spent_minutes=5,
        now=BASE_TIME + timedelta(minutes=3),
    )

    transitions = AlertTransitionRepository(sqlite_session_factory).list_for_alert(alert.id)

    assert [
        (item.event_type, item.from_status, item.to_status, item.actor) for item in transitions
    ] == [
        ("create", None, "PENDING", "system"),
        ("claim", "PENDING", "PENDING", "nurse-a"),
        ("acknowledge", "PENDING", "ACKNOWLEDGED", "nurse-a"),
        ("resolve", "ACKNOWLEDGED", "RESOLVED", "nurse-a"),
    ]
    assert transitions[-1].reason == RESOLUTION_NOTE
    assert transitions[-1].context["time_spent_minutes"] == 5


def test_release_stale_claims(sqlite_session_factory) -> None:
    """Claims older than the timeout are released; fresh claims are kept."""
    stale = _create_alert(sqlite_session_factory, patient_id="patient-stale")
    fresh = _create_alert(sqlite_session_factory, patient_id="patient-fresh")
    lifecycle = _lifecycle(sqlite_session_factory, claim_timeout_minutes=60)
    lifecycle.claim(stale.id, "nurse-a", now=BASE_TIME)
    lifecycle.claim(fresh.id, "nurse-b", now=BASE_TIME + timedelta(minutes=50))

    released = lifecycle.release_stale_claims(now=BASE_TIME + timedelta(minutes=90))

    assert released == [stale.id]
    release_records = AlertTransitionRepository(sqlite_session_factory).list_for_alert(
        stale.id,
        event_type="release",
    )
    assert len(release_records) == 1
    assert release_records[0].reason == "claim_timeout"
    assert release_records[0].context["previous_claimant"] == "nurse-a"
    assert lifecycle.claim(stale.id, "nurse-c").claimed_by == "nurse-c"
    with pytest.raises(AlertConflictError, match="already claimed by nurse-b"):
        lifecycle.claim(fresh.id, "nurse-c")


def test_expire_stale_alerts_cancels_old_unclaimed_pending(sqlite_session_factory) -> None:
    """Old unclaimed PENDING alerts are cancelled by the system; claimed ones are kept."""
    old = _create_alert(sqlite_session_factory, patient_id="patient-old", now=BASE_TIME)
    claimed = _create_alert(sqlite_session_factory, patient_id="patient-claimed", now=BASE_TIME)
    recent = _create_alert(
        sqlite_session_factory,
        patient_id="patient-recent",
        now=BASE_TIME + timedelta(hours=70),
    )
    lifecycle = _lifecycle(sqlite_session_factory, stale_alert_hours=72)
    lifecycle.claim(claimed.id, "nurse-a", now=BASE_TIME + timedelta(hours=1))

    expired = lifecycle.expire_stale_alerts(now=BASE_TIME + timedelta(hours=73))

    assert expired == [old.id]
    transitions = AlertTransitionRepository(sqlite_session_factory).list_for_alert(
        old.id,
        event_type="cancel",
    )
    assert transitions[0].actor == "system"
    assert transitions[0].reason == "Auto-resolved: Alert expired after 72 hours without action"
    assert recent.id not in expired


def test_expire_stale_alerts_disabled_with_zero_hours(sqlite_session_factory) -> None:
    """A zero-hour window disables automatic expiry."""
    _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory, stale_alert_hours=0)

    assert lifecycle.expire_stale_alerts(now=BASE_TIME + timedelta(days=30)) == []


def _create_alert_with_severity(session_factory, severity: str, patient_id: str):
    """Create a PENDING alert of the given severity triggered at the base time."""
    creator = AlertCreationService(session_factory, sla_minutes=SLA_MINUTES)
    return creator.create_or_attach(
        make_match(make_observation(9, patient_id=patient_id), make_rule(severity=severity)),
        now=BASE_TIME,
    ).alert


def test_escalation_waits_for_severity_delay_after_breach(sqlite_session_factory) -> None:
    """A CRITICAL alert escalates 30 minutes after its SLA breach, not before."""
    alert = _create_alert_with_severity(sqlite_session_factory, "CRITICAL", "patient-1")
    lifecycle = _lifecycle(sqlite_session_factory, escalation_delay_minutes=ESCALATION_DELAYS)
    breach = BASE_TIME + timedelta(minutes=30)
    assert alert.sla_breach_at == breach

    early = lifecycle.escalate_sla_breaches(now=breach + timedelta(minutes=29))
    due = lifecycle.escalate_sla_breaches(now=breach + timedelta(minutes=45))

    assert early == []
    assert due == [alert.id]
    with sqlite_session_factory() as session:
        stored = session.get(Alert, alert.id)
        assert stored.status == "PENDING"
        assert stored.escalation_level == 1
        assert stored.escalated_at == breach + timedelta(minutes=45)
        assert stored.escalation_reason == "Automatic escalation: SLA breach (45 minutes overdue)"
    records = AlertTransitionRepository(sqlite_session_factory).list_for_alert(
        alert.id,
        event_type="escalate",
    )
    assert len(records) == 1
    assert records[0].actor == "system"
    assert records[0].context["minutes_overdue"] == 45


def test_escalation_happens_once(sqlite_session_factory) -> None:
    """An already escalated alert is not escalated again."""
    alert = _create_alert_with_severity(sqlite_session_factory, "HIGH", "patient-1")
    lifecycle = _lifecycle(sqlite_session_factory, escalation_delay_minutes=ESCALATION_DELAYS)

    first = lifecycle.escalate_sla_breaches(now=BASE_TIME + timedelta(hours=5))
    second = lifecycle.escalate_sla_breaches(now=BASE_TIME + timedelta(hours=6))

    assert first == [alert.id]
    assert second == []


def test_escalation_skips_low_severity_and_closed_alerts(sqlite_session_factory) -> None:
    """LOW alerts have no escalation delay and terminal alerts are never escalated."""
    low = _create_alert_with_severity(sqlite_session_factory, "LOW", "patient-low")
    resolved = _create_alert_with_severity(sqlite_session_factory, "CRITICAL", "patient-resolved")
    acknowledged = _create_alert_with_severity(sqlite_session_factory, "MEDIUM", "patient-ack")
    lifecycle = _lifecycle(sqlite_session_factory, escalation_delay_minutes=ESCALATION_DELAYS)
    lifecycle.claim(resolved.id, "nurse-a", now=BASE_TIME)
    lifecycle.resolve(resolved.id, "nurse-a", RESOLUTION_NOTE, now=BASE_TIME + timedelta(minutes=5))
    lifecycle.claim(acknowledged.id, "nurse-b", now=BASE_TIME)
    lifecycle.acknowledge(acknowledged.id, "nurse-b", now=BASE_TIME + timedelta(minutes=5))

    escalated = lifecycle.escalate_sla_breaches(now=BASE_TIME + timedelta(days=3))

    assert escalated == [acknowledged.id]
    assert low.id not in escalated


def test_snooze_keeps_status_and_claim(sqlite_session_factory) -> None:
    """Snoozing records who deferred the alert and until when."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory, max_snooze_minutes=10080)
    lifecycle.claim(alert.id, "nurse-a", now=BASE_TIME)

    snoozed = lifecycle.snooze(alert.id, "nurse-a", 60, now=BASE_TIME + timedelta(minutes=1))

    assert snoozed.status == "PENDING"
    assert snoozed.claimed_by == "nurse-a"
    assert snoozed.snoozed_by == "nurse-a"
    assert snoozed.snoozed_until == BASE_TIME + timedelta(minutes=61)
    records = AlertTransitionRepository(sqlite_session_factory).list_for_alert(
        alert.id,
        event_type="snooze",
    )
    assert records[0].context["snooze_minutes"] == 60


@pytest.mark.parametrize("minutes", [0, 10081])
def test_snooze_rejects_out_of_range_duration(sqlite_session_factory, minutes: int) -> None:
    """Snooze durations must be positive and within the configured ceiling."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory, max_snooze_minutes=10080)

    with pytest.raises(ValueError, match="between 1 and 10080"):
        lifecycle.snooze(alert.id, "nurse-a", minutes)


def test_snooze_rejects_terminal_alert(sqlite_session_factory) -> None:
    """Cancelled alerts cannot be snoozed."""
    alert = _create_alert(sqlite_session_factory)
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.cancel(alert.id, "dr-b", "Duplicate reading entered in error")

    with pytest.raises(AlertConflictError, match="already cancelled and cannot be snoozed"):
        lifecycle.snooze(alert.id, "nurse-a", 30)


def test_reactivate_snoozed_alerts_clears_expired_snoozes(sqlite_session_factory) -> None:
    """Only snoozes that have run out are cleared."""
    expired = _create_alert(sqlite_session_factory, patient_id="patient-expired")
    active = _create_alert(sqlite_session_factory, patient_id="patient-active")
    lifecycle = _lifecycle(sqlite_session_factory)
    lifecycle.snooze(expired.id, "nurse-a", 30, now=BASE_TIME)
    lifecycle.snooze(active.id, "nurse-a", 240, now=BASE_TIME)

    reactivated = lifecycle.reactivate_snoozed_alerts(now=BASE_TIME + timedelta(hours=1))

    assert reactivated == [expired.id]
    with sqlite_session_factory() as session:
        cleared = session.get(Alert, expired.id)
        still_snoozed = session.get(Alert, active.id)
        assert cleared.snoozed_until is None
        assert cleared.snoozed_by is None
        assert cleared.status == "PENDING"
        assert still_snoozed.snoozed_until == BASE_TIME + timedelta(hours=4)
    records = AlertTransitionRepository(sqlite_session_factory).list_for_alert(
        expired.id,
        event_type="reactivate",
    )
    assert records[0].actor == "system"
    assert records[0].context["snoozed_by"] == "nurse-a"
