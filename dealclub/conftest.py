# dealclub/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("ENV", "test")

from dealclub.core.database import build_engine, metadata  # noqa: E402
from dealclub.core.repository import SqlRepository  # noqa: E402
from dealclub.features.notifications.service import hub  # noqa: E402
from dealclub.features.plans.service import seed_plans  # noqa: E402
from dealclub.tests.fakes import InMemoryRepository  # noqa: E402


# Mid-month so a whole test stays inside one quota period
FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def sqlite_engine(tmp_path):
    """
    File-backed SQLite database per test.

    A file (not :memory:) so every pooled connection sees the same data and
    threads contend on the real write lock.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'dealclub-test.db'}", echo=False)
    metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repo(sqlite_engine, now):
    """SqlRepository bound to the per-test database, with default plans seeded."""
    repository = SqlRepository(sqlite_engine)
    seed_plans(now=now, repo=repository)
    return repository


@pytest.fixture
def memory_repo(now):
    repository = InMemoryRepository()
    seed_plans(now=now, repo=repository)
    return repository


@pytest.fixture(autouse=True)
def clear_notification_listeners():
    """Listeners registered by one test never leak into the next."""
    hub.clear()
    yield
    hub.flush()
    hub.clear()


@pytest.fixture
def events():
    """Collect every notification emitted during the test."""
    received = []
    hub.subscribe("*", received.append)
    yield received
    hub.unsubscribe("*", received.append)
