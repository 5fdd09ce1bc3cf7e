import asyncio
import json
from datetime import timedelta

import pytest

from storage_jobs.adapters.queue.base import QueueOptions, SendOptions, WorkerOptions
from storage_jobs.adapters.queue.local import LocalJobQueue, resolve_queue_dir
from storage_jobs.errors import ConfigurationError
from storage_jobs.jobs.models import Job, JobState, JobWithMetadata, utcnow


async def test_fetch_orders_by_priority_then_fifo(local_queue: LocalJobQueue):
    first = await local_queue.send("emails", {"n": 1})
    second = await local_queue.send("emails", {"n": 2})
    urgent = await local_queue.send("emails", {"n": 3}, SendOptions(priority=10))

    leased = await local_queue.fetch("emails", batch_size=3)

    assert [job.id for job in leased] == [urgent, first, second]
    assert all(type(job) is Job for job in leased)


async def test_fetch_with_metadata(local_queue: LocalJobQueue):
    job_id = await local_queue.send("emails", {"n": 1}, SendOptions(retry_limit=4))

    [job] = await local_queue.fetch("emails", include_metadata=True)

    assert isinstance(job, JobWithMetadata)
    assert job.id == job_id
    assert job.state == JobState.ACTIVE
    assert job.retry_limit == 4
    assert job.expire_in == timedelta(hours=48)


async def test_leased_job_is_not_fetched_twice(local_queue: LocalJobQueue):
    await local_queue.send("emails", {})

    assert len(await local_queue.fetch("emails")) == 1
    assert await local_queue.fetch("emails") == []


async def test_start_after_delays_job(local_queue: LocalJobQueue):
    await local_queue.send("emails", {}, SendOptions(start_after_seconds=60))

    assert await local_queue.fetch("emails") == []
    assert await local_queue.get_queue_size("emails") == 1


async def test_fail_retries_until_limit(local_queue: LocalJobQueue):
    job_id = await local_queue.send("emails", {}, SendOptions(retry_limit=1))

    await local_queue.fetch("emails")
    await local_queue.fail("emails", job_id, RuntimeError("boom"))
    record = await local_queue.get_job_by_id("emails", job_id)
    assert record.state == JobState.RETRY
    assert record.retry_count == 1

    await local_queue.fetch("emails")
    await local_queue.fail("emails", job_id, RuntimeError("boom again"))
    record = await local_queue.get_job_by_id("emails", job_id)
    assert record.state == JobState.FAILED
    assert record.output == {"message": "boom again"}


def test_retry_backoff_doubles():
    job = JobWithMetadata(id="1", name="q", data={}, retry_delay=2, retry_backoff=True, retry_count=3)
    assert LocalJobQueue.retry_delay_seconds(job) == 16

    job.retry_backoff = False
    assert LocalJobQueue.retry_delay_seconds(job) == 2


async def test_complete_records_output(local_queue: LocalJobQueue):
    job_id = await local_queue.send("emails", {})
    await local_queue.fetch("emails")

    await local_queue.complete("emails", job_id, {"sent": True})

    record = await local_queue.get_job_by_id("emails", job_id)
    assert record.state == JobState.COMPLETED
    assert record.output == {"sent": True}
    assert record.completed_on is not None


async def test_get_job_by_id_checks_queue_name(local_queue: LocalJobQueue):
    job_id = await local_queue.send("emails", {})

    assert await local_queue.get_job_by_id("other", job_id) is None


async def test_singleton_key(local_queue: LocalJobQueue):
    assert await local_queue.send("emails", {}, SendOptions(singleton_key="user-1")) is not None
    assert await local_queue.send("emails", {}, SendOptions(singleton_key="user-1")) is None


async def test_maintenance_archives_and_purges():
    queue = LocalJobQueue(QueueOptions(archive_completed_after_seconds=0, delete_after_days=1, retention_days=1))
    await queue.start()
    try:
        done_id = await queue.send("emails", {})
        await queue.fetch("emails")
        await queue.complete("emails", done_id)
        stale_id = await queue.send("emails", {})
        queue._jobs[stale_id].created_on = utcnow() - timedelta(days=2)

        await queue.maintain()

        # archived jobs stay visible until purged
        assert (await queue.get_job_by_id("emails", done_id)).state == JobState.COMPLETED
        assert await queue.get_job_by_id("emails", stale_id) is None

        queue._archive[done_id].completed_on = utcnow() - timedelta(days=2)
        await queue.maintain()
        assert await queue.get_job_by_id("emails", done_id) is None
    finally:
        await queue.stop()
        await queue.stopped.wait()


async def test_snapshots_survive_restart(tmp_path):
    options = QueueOptions(connection_string=f"file://{tmp_path / 'queue'}")
    queue = LocalJobQueue(options)
    await queue.start()
    leased_id = await queue.send("emails", {"to": "a@example.com"})
    waiting_id = await queue.send("emails", {"to": "b@example.com"})
    await queue.fetch("emails")  # leases the first job
    await queue.stop()
    await queue.stopped.wait()

    saved = json.loads((tmp_path / "queue" / "emails" / f"{leased_id}.json").read_text())
    assert saved["data"] == {"to": "a@example.com"}
    assert saved["state"] == "retry"

    restarted = LocalJobQueue(options)
    await restarted.start()
    try:
        assert (await restarted.get_job_by_id("emails", leased_id)).state == JobState.RETRY
        assert (await restarted.get_job_by_id("emails", waiting_id)).state == JobState.CREATED
        assert await restarted.get_queue_size("emails") == 2
    finally:
        await restarted.stop()
        await restarted.stopped.wait()


async def test_corrupt_snapshot_is_moved_aside(tmp_path):
    queue_dir = tmp_path / "queue"
    (queue_dir / "emails").mkdir(parents=True)
    (queue_dir / "emails" / "broken.json").write_text("{not json")

    queue = LocalJobQueue(QueueOptions(connection_string=str(queue_dir)))
    await queue.start()
    await queue.stop()
    await queue.stopped.wait()

    assert (queue_dir / "errors" / "emails-broken.json").exists()


def test_resolve_queue_dir(tmp_path):
    assert resolve_queue_dir(None) is None
    assert resolve_queue_dir("memory://") is None
    assert resolve_queue_dir(f"file://{tmp_path}") == tmp_path
    assert resolve_queue_dir(str(tmp_path)) == tmp_path
    with pytest.raises(ConfigurationError):
        resolve_queue_dir("postgres://localhost/db")


async def test_worker_loop_completes_and_fails(local_queue: LocalJobQueue):
    seen = []

    async def handler(job):
        seen.append(job.data["n"])
        if job.data["n"] == 2:
            raise ValueError("bad job")
        return {"ok": job.data["n"]}

    ok_id = await local_queue.send("numbers", {"n": 1})
    bad_id = await local_queue.send("numbers", {"n": 2}, SendOptions(retry_limit=0))
    await local_queue.work("numbers", WorkerOptions(polling_interval_seconds=0.01), handler)

    for _ in range(200):
        bad = await local_queue.get_job_by_id("numbers", bad_id)
        if bad.state == JobState.FAILED:
            break
        await asyncio.sleep(0.01)

    assert (await local_queue.get_job_by_id("numbers", ok_id)).output == {"ok": 1}
    assert (await local_queue.get_job_by_id("numbers", bad_id)).state == JobState.FAILED
    assert seen == [1, 2]


async def test_expired_job_is_failed(local_queue: LocalJobQueue):
    async def handler(job):
        await asyncio.sleep(10)

    job_id = await local_queue.send("slow", {}, SendOptions(retry_limit=0, expire_in_seconds=0.05))
    await local_queue.work("slow", WorkerOptions(polling_interval_seconds=0.01, include_metadata=True), handler)

    for _ in range(200):
        if (await local_queue.get_job_by_id("slow", job_id)).state == JobState.FAILED:
            break
        await asyncio.sleep(0.01)

    assert (await local_queue.get_job_by_id("slow", job_id)).state == JobState.FAILED


async def test_stop_sets_stopped_and_is_idempotent():
    queue = LocalJobQueue(QueueOptions())
    await queue.start()
    await queue.work("emails", WorkerOptions(polling_interval_seconds=0.01), lambda job: asyncio.sleep(0))

    await queue.stop(timeout=1)
    await queue.stop(timeout=1)
    await asyncio.wait_for(queue.stopped.wait(), timeout=2)

    assert queue.stopped.is_set()


async def test_send_does_not_trigger_maintenance(monkeypatch):
    queue = LocalJobQueue(QueueOptions(maintenance_interval_seconds=3600))
    runs = []

    async def maintain():
        runs.append(1)

    monkeypatch.setattr(queue, "maintain", maintain)
    await queue.start()
    for n in range(3):
        await queue.send("emails", {"n": n})
        await asyncio.sleep(0.01)

    assert runs == []
    await queue.stop(timeout=1)
    await queue.stopped.wait()
    assert runs == []


async def test_close_hooks_run_after_workers_drain():
    queue = LocalJobQueue(QueueOptions(retry_delay=0, retry_backoff=False, maintenance_interval_seconds=3600))
    events = []
    started = asyncio.Event()

    async def handler(job):
        started.set()
        await asyncio.sleep(0.05)
        events.append("handled")

    async def before_close():
        events.append("hook")

    queue.before_close(before_close)
    await queue.start()
    await queue.work("emails", WorkerOptions(polling_interval_seconds=0.01), handler)
    await queue.send("emails", {})
    await started.wait()

    await queue.stop(timeout=1)
    await queue.stopped.wait()

    assert events == ["handled", "hook"]
