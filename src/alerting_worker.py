"""Maintenance CLI for the clinical alerting service."""

import argparse
import logging
from datetime import datetime, timezone
from typing import Callable, Sequence

from sqlalchemy.orm import Session

from alerting.lifecycle import AlertLifecycleService
from alerting.reevaluation import ReevaluationQueue
from config import settings

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _default_session_factory() -> Callable[[], Session]:
    from services.database import get_sync_session_factory

    return get_sync_session_factory()


def run_migrate() -> int:
    """Apply database migrations."""
    from services.database import run_migrations_sync

    run_migrations_sync()
    return 0


def run_release_stale_claims(session_factory: Callable[[], Session], now: datetime) -> int:
    """Release claims held past the configured claim timeout."""
    released = AlertLifecycleService(session_factory).release_stale_claims(now=now)
    print(f"released={len(released)}")
    return 0


def run_expire_stale_alerts(session_factory: Callable[[], Session], now: datetime) -> int:
    """Cancel unclaimed PENDING alerts older than the stale-alert window."""
    expired = AlertLifecycleService(session_factory).expire_stale_alerts(now=now)
    print(f"expired={len(expired)}")
    return 0


def run_escalate_sla_breaches(session_factory: Callable[[], Session], now: datetime) -> int:
    """Escalate open alerts whose SLA breach has outlasted the escalation delay."""
    escalated = AlertLifecycleService(session_factory).escalate_sla_breaches(now=now)
    print(f"escalated={len(escalated)}")
    return 0


def run_reactivate_snoozed_alerts(session_factory: Callable[[], Session], now: datetime) -> int:
    """Clear snoozes that have run out."""
    reactivated = AlertLifecycleService(session_factory).reactivate_snoozed_alerts(now=now)
    print(f"reactivated={len(reactivated)}")
    return 0


def run_queue_status(session_factory: Callable[[], Session], now: datetime) -> int:
    """Print re-evaluation queue depth and how many entries are due."""
    queue = ReevaluationQueue(session_factory)
    entries = queue.list_all()
    due = queue.list_due(now)
    print(f"queued={len(entries)} due={len(due)}")
    for entry in entries:
        print(
            f"{entry.observation_id} patient={entry.patient_id} reason={entry.reason} "
            f"attempts={entry.attempts} retry_at={entry.retry_at.isoformat()}"
        )
    return 0


def main(
    argv: Sequence[str] | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Clinical alerting maintenance tasks")
    parser.add_argument(
        "command",
        choices=[
            "migrate",
            "release-stale-claims",
            "expire-stale-alerts",
            "escalate-sla-breaches",
            "reactivate-snoozed-alerts",
            "queue-status",
        ],
        help="Maintenance task to run",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "migrate":
        return run_migrate()

    factory = session_factory or _default_session_factory()
    now = datetime.now(timezone.utc)
    logger.info("Running alerting maintenance task: command=%s", args.command)
    if args.command == "release-stale-claims":
        return run_release_stale_claims(factory, now)
    if args.command == "expire-stale-alerts":
        return run_expire_stale_alerts(factory, now)
    if args.command == "escalate-sla-breaches":
        return run_escalate_sla_breaches(factory, now)
    if args.command == "reactivate-snoozed-alerts":
        return run_reactivate_snoozed_alerts(factory, now)
    return run_queue_status(factory, now)


if __name__ == "__main__":
    raise SystemExit(main())
