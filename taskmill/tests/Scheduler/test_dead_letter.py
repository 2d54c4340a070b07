from datetime import timedelta

import pytest

from taskmill.core.Scheduler.dead_letter import DeadLetterEntry, DeadLetterQueue
from taskmill.core.Scheduler.exceptions import NotFoundError
from taskmill.core.Scheduler.models import Job


def _job(**kw):
    base = dict(name="charge_card", module="app.billing", function="charge", schedule={"every": 3600},
                queue="billing", args={"invoice": 42})
    base.update(kw)
    return Job(**base)


@pytest.mark.asyncio
async def test_insert_keeps_job_details_and_calls_back(store, clock, events):
    received = []
    dlq = DeadLetterQueue(store, on_dead_letter=received.append)
    await store.register_job(_job())

    entry = await dlq.insert(_job(), RuntimeError("card declined"), error_class="retryable",
                             attempts=5, stacktrace="Traceback ...")
    assert received == [entry]
    assert entry.args == {"invoice": 42}
    assert entry.first_failed_at == clock.now()

    stored = await dlq.get(entry.id)
    assert stored.error == "card declined"
    assert stored.error_class == "retryable"
    assert stored.attempts == 5
    assert [e for e, _ in events] == ["dead_letter.insert"]


@pytest.mark.asyncio
async def test_async_callback_and_failing_callback(memory_store):
    seen = []

    async def notify(entry):
        seen.append(entry.job_name)

    await DeadLetterQueue(memory_store, on_dead_letter=notify).insert(_job(), "boom")
    assert seen == ["charge_card"]

    def broken(entry):
        raise RuntimeError("pager down")

    # A failing callback does not lose the entry
    entry = await DeadLetterQueue(memory_store, on_dead_letter=broken).insert(_job(), "boom")
    assert (await memory_store.get_dead_letter(entry.id)).id == entry.id


@pytest.mark.asyncio
async def test_retry_makes_job_due_and_removes_entry(store, clock):
    await store.register_job(_job(next_run_at=clock.now() + timedelta(hours=1)))
    dlq = DeadLetterQueue(store)
    entry = await dlq.insert(_job(), "card declined")

    clock.advance(10)
    job = await dlq.retry(entry.id)
    assert job.next_run_at == clock.now()
    assert (await store.get_job("charge_card")).is_due(clock.now())
    with pytest.raises(NotFoundError):
        await dlq.get(entry.id)


@pytest.mark.asyncio
async def test_list_delete_and_prune(store, clock):
    dlq = DeadLetterQueue(store, retention_days=30)
    old = await dlq.insert(_job(), "old failure")
    clock.advance(31 * 86400)
    fresh = await dlq.insert(_job(queue="other"), "new failure")

    assert {e.id for e in await dlq.list()} == {old.id, fresh.id}
    assert [e.id for e in await dlq.list(queue="other")] == [fresh.id]

    assert await dlq.prune() == 1
    assert [e.id for e in await dlq.list()] == [fresh.id]
    assert await dlq.delete(fresh.id)
    assert not await dlq.delete(fresh.id)


def test_entry_truncates_long_errors():
    entry = DeadLetterEntry(job_name="j", queue="q", module="m", function="f", error="x" * 5000)
    assert len(entry.error) <= 1000
    assert DeadLetterEntry.from_dict(entry.to_dict()).error == entry.error
