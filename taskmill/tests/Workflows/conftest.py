from datetime import datetime, timezone

import pytest
import pytest_asyncio

from taskmill.core.Scheduler.clock import ManualClock
from taskmill.core.Scheduler.config import reset_config
from taskmill.core.Scheduler.store import MemoryStore
from taskmill.core.Scheduler.telemetry import add_listener, clear_listeners
from taskmill.core.Workflows import WorkflowEngine

# Mark every test in this directory as part of the 'workflows' suite
pytestmark = pytest.mark.workflows

# Monday 2026-01-05, just before a 06:00 cron slot
T0 = datetime(2026, 1, 5, 5, 59, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_workflow_env(monkeypatch):
    """Metrics off, no config or listeners leaking between tests."""
    for key in ("SCHEDULER_DATABASE_URL", "SCHEDULER_NODE", "SCHEDULER_TEST_NOW_EPOCH"):
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
def store(clock):
    return MemoryStore(clock=clock)


@pytest_asyncio.fixture()
async def engine(store):
    eng = WorkflowEngine(store=store, step_concurrency=5, node="wf-node")
    yield eng
    await eng.stop()


@pytest_asyncio.fixture()
async def bare_engine():
    """Engine without a store."""
    eng = WorkflowEngine()
    yield eng
    await eng.stop()


@pytest.fixture()
def events():
    seen = []

    def _listener(event, payload):
        seen.append((event, payload))

    add_listener(_listener)
    return seen
