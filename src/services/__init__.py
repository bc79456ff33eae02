"""Infrastructure services for the alerting worker."""

from services.database import get_sync_engine, get_sync_session_factory, run_migrations_sync

__all__ = [
    "get_sync_engine",
    "get_sync_session_factory",
    "run_migrations_sync",
]
