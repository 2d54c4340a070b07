from datetime import datetime, timezone

import pytest

from taskmill.core.Scheduler.clock import ManualClock
from taskmill.core.Scheduler.config import reset_config
from taskmill.core.Scheduler.store import MemoryStore, SQLiteStore
from taskmill.core.Scheduler.telemetry import add_listener, clear_listeners

# Mark every test in this directory as part of the 'scheduler' suite
pytestmark = pytest.mark.scheduler

# Monday 2026-01-05, just before a 06:00 cron slot
T0 = datetime(2026, 1, 5, 5, 59, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_scheduler_env(monkeypatch):
    """Deterministic env for scheduler tests.

    - Drop any SCHEDULER_* overrides from the developer's shell
    - Keep metrics off so tests do not depend on the global Prometheus registry
    - Reset the config singleton and the event listeners around each test
    """
    for key in (
        "SCHEDULER_DATABASE_URL",
        "SCHEDULER_NODE",
        "SCHEDULER_PEER",
        "SCHEDULER_TEST_NOW_EPOCH",
        "SCHEDULER_QUEUE_CONCURRENCY",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SCHEDULER_METRICS_ENABLED", "false")
    reset_config()
    clear_listeners()
    yield
    clear_listeners()
    reset_config()


@pytest.fixture()
def clock():
    return ManualClock(T0)


@pytest.fixture()
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture()
def sqlite_store(tmp_path, clock):
    return SQLiteStore(tmp_path / "scheduler.db", clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path, clock):
    """Every store backend behind the same contract."""
    if request.param == "memory":
        return MemoryStore(clock=clock)
    return SQLiteStore(tmp_path / "scheduler.db", clock=clock)


@pytest.fixture()
def events():
    """Collect ``(event, payload)`` pairs emitted during the test."""
    seen = []

    def _listener(event, payload):
        seen.append((event, payload))

    add_listener(_listener)
    return seen
