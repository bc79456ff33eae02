"""Pytest configuration for the alerting test suite."""

import os
import sys
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("CLINIC_TIMEZONE", "UTC")
    os.environ.setdefault("LOG_LEVEL", "DEBUG")
    os.environ.setdefault("ALERTING_UPSTREAM_TIMEOUT", "2")
    os.environ.setdefault("ALERTING_TASK_TIMEOUT", "2")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture()
def sqlite_session_factory() -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory and ensure engine cleanup."""
    from models import Base

    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def file_sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a file-backed sqlite session factory usable from several threads."""
    from models import Base

    engine = create_engine(
        f"sqlite:///{tmp_path / 'alerting.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()
