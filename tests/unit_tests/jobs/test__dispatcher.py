import asyncio
import logging

import pytest

from storage_jobs import metrics
from storage_jobs.adapters.queue.base import QueueOptions, SendOptions, WorkerOptions
from storage_jobs.adapters.queue.local import LocalJobQueue
from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import Aborted, ConfigurationError, QueueUninitialized
from storage_jobs.jobs import dispatcher as dispatcher_module
from storage_jobs.jobs.dispatcher import Dispatcher, resolve_connection_target
from storage_jobs.jobs.models import Job, JobState, JobWithMetadata
from storage_jobs.jobs.registry import TaskRegistry
from storage_jobs.jobs.tasks import BaseTask
from storage_jobs.settings import Settings

FAST = WorkerOptions(polling_interval_seconds=0.01)
FAST_WITH_METADATA = WorkerOptions(polling_interval_seconds=0.01, include_metadata=True)


async def wait_for(predicate, timeout: float = 5.0):
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if await predicate():
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def job_state(queue, name, job_id):
    record = await queue.get_job_by_id(name, job_id)
    return record.state if record else None


class RecordingQueue(LocalJobQueue):
    """Local queue that remembers which queue names got worker loops."""

    def __init__(self, options):
        super().__init__(options)
        self.worked = []

    async def work(self, name, options, handler):
        self.worked.append(name)
        return await super().work(name, options, handler)


class FailingLookupQueue(LocalJobQueue):
    async def get_job_by_id(self, name, job_id):
        raise RuntimeError("lookup exploded")


def make_dispatcher(task_registry, local_settings, queue_class=LocalJobQueue):
    built = []

    def build(options: QueueOptions, settings: Settings):
        queue = queue_class(QueueOptions(retry_delay=0, retry_backoff=False, maintenance_interval_seconds=3600))
        built.append(queue)
        return queue

    dispatcher = Dispatcher(registry=task_registry, queue_factory=build, settings=local_settings)
    return dispatcher, built


async def test_concurrent_start_returns_same_queue(task_registry, local_settings, queue_builder):
    dispatcher = Dispatcher(registry=task_registry, queue_factory=queue_builder, settings=local_settings)

    first, second = await asyncio.gather(dispatcher.start(), dispatcher.start())

    assert first is second
    assert dispatcher.get_queue() is first
    assert len(queue_builder.built) == 1
    await dispatcher.stop()


async def test_one_worker_loop_per_task_plus_slow_queue(task_registry, local_settings):
    @task_registry.register
    class PlainTask(BaseTask):
        queue_name = "plain"

    @task_registry.register
    class SlowTask(BaseTask):
        queue_name = "with-slow"
        slow_retry_queue_name = "with-slow-slow"

    dispatcher, built = make_dispatcher(task_registry, local_settings, RecordingQueue)
    await dispatcher.start()

    assert sorted(built[0].worked) == ["plain", "with-slow", "with-slow-slow"]
    assert len(dispatcher.worker_ids) == 3
    assert task_registry.built
    await dispatcher.stop()


async def test_handler_succeeds_on_third_attempt(task_registry, local_settings):
    attempts = []
    escalations = []

    @task_registry.register
    class FlakyTask(BaseTask):
        queue_name = "flaky-three"
        slow_retry_queue_name = "flaky-three-slow"
        worker_options = FAST_WITH_METADATA
        send_options = SendOptions(retry_limit=3)

        @classmethod
        async def handle(cls, job):
            attempts.append(job.id)
            if len(attempts) < 3:
                raise RuntimeError(f"attempt {len(attempts)} failed")
            return {"attempts": len(attempts)}

        @classmethod
        async def send_slow_retry_queue(cls, payload, queue=None):
            escalations.append(payload)
            return await super().send_slow_retry_queue(payload, queue)

    completed = metrics.sample("queue_job_completed", "flaky-three")
    retry_failed = metrics.sample("queue_job_retry_failed", "flaky-three")
    errors = metrics.sample("queue_job_error", "flaky-three")

    dispatcher, _ = make_dispatcher(task_registry, local_settings)
    queue = await dispatcher.start()
    job_id = await FlakyTask.send({"key": "value"}, queue=queue)

    async def is_completed():
        return await job_state(queue, "flaky-three", job_id) == JobState.COMPLETED

    await wait_for(is_completed)
    await dispatcher.stop()

    assert len(attempts) == 3
    assert metrics.sample("queue_job_completed", "flaky-three") == completed + 1
    assert metrics.sample("queue_job_retry_failed", "flaky-three") == retry_failed + 2
    assert metrics.sample("queue_job_error", "flaky-three") == errors
    assert escalations == []


async def test_exhausted_job_is_escalated_once(task_registry, local_settings):
    escalated = []

    @task_registry.register
    class AlwaysFailingTask(BaseTask):
        queue_name = "always-fails"
        slow_retry_queue_name = "always-fails-slow"
        worker_options = FAST
        slow_retry_worker_options = FAST
        send_options = SendOptions(retry_limit=1)
        slow_retry_send_options = SendOptions(retry_limit=0)

        @classmethod
        async def handle(cls, job):
            raise RuntimeError("always broken")

        @classmethod
        async def send_slow_retry_queue(cls, payload, queue=None):
            job_id = await super().send_slow_retry_queue(payload, queue)
            escalated.append((job_id, payload))
            return job_id

    retry_failed = metrics.sample("queue_job_retry_failed", "always-fails")
    errors = metrics.sample("queue_job_error", "always-fails")

    dispatcher, _ = make_dispatcher(task_registry, local_settings)
    queue = await dispatcher.start()
    payload = {"bucket": "avatars", "key": "a.png", "nested": {"n": 1}}
    job_id = await AlwaysFailingTask.send(payload, queue=queue)

    async def both_failed():
        if await job_state(queue, "always-fails", job_id) != JobState.FAILED or not escalated:
            return False
        return await job_state(queue, "always-fails-slow", escalated[0][0]) == JobState.FAILED

    await wait_for(both_failed)
    await dispatcher.stop()

    assert len(escalated) == 1
    assert escalated[0][1] == payload
    # two primary attempts and the one slow-queue attempt
    assert metrics.sample("queue_job_retry_failed", "always-fails") == retry_failed + 3
    assert metrics.sample("queue_job_error", "always-fails") == errors + 2


async def test_exhausted_job_without_slow_queue_is_not_escalated(task_registry, local_settings):
    @task_registry.register
    class NoSlowQueueTask(BaseTask):
        queue_name = "no-slow"
        worker_options = FAST
        send_options = SendOptions(retry_limit=0)

        @classmethod
        async def handle(cls, job):
            raise RuntimeError("broken")

    errors = metrics.sample("queue_job_error", "no-slow")

    dispatcher, _ = make_dispatcher(task_registry, local_settings)
    queue = await dispatcher.start()
    job_id = await NoSlowQueueTask.send({}, queue=queue)

    async def is_failed():
        return await job_state(queue, "no-slow", job_id) == JobState.FAILED

    await wait_for(is_failed)
    assert not dispatcher._escalations
    await dispatcher.stop()

    assert metrics.sample("queue_job_error", "no-slow") == errors + 1


async def test_lookup_failure_does_not_replace_handler_error(task_registry, local_settings, caplog):
    class BrokenTask(BaseTask):
        queue_name = "broken-lookup"

        @classmethod
        async def handle(cls, job):
            raise ValueError("original failure")

    dispatcher = Dispatcher(registry=task_registry, settings=local_settings)
    queue = FailingLookupQueue(QueueOptions())
    handler = dispatcher._register_task(queue, BrokenTask, None, slow=False)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ValueError, match="original failure"):
            await handler(Job(id="job-1", name="broken-lookup", data={}))

    assert "lookup exploded" in caplog.text


async def test_escalation_failure_is_only_logged(task_registry, local_settings, caplog):
    class EscalationFailsTask(BaseTask):
        queue_name = "escalation-fails"
        slow_retry_queue_name = "escalation-fails-slow"

        @classmethod
        async def handle(cls, job):
            raise ValueError("handler failure")

        @classmethod
        async def send_slow_retry_queue(cls, payload, queue=None):
            raise RuntimeError("slow queue unavailable")

    dispatcher = Dispatcher(registry=task_registry, settings=local_settings)
    queue = LocalJobQueue(QueueOptions())
    handler = dispatcher._register_task(queue, EscalationFailsTask, None, slow=False)
    job = JobWithMetadata(id="job-2", name="escalation-fails", data={"a": 1}, retry_count=2, retry_limit=2)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(ValueError, match="handler failure"):
            await handler(job)
        await asyncio.gather(*list(dispatcher._escalations), return_exceptions=True)
        await asyncio.sleep(0)

    assert "slow queue unavailable" in caplog.text
    assert not dispatcher._escalations


async def test_on_message_sees_every_job(task_registry, local_settings):
    seen = []
    done = asyncio.Event()

    @task_registry.register
    class EchoTask(BaseTask):
        queue_name = "echo"
        worker_options = FAST

        @classmethod
        async def handle(cls, job):
            done.set()

    dispatcher, _ = make_dispatcher(task_registry, local_settings)
    queue = await dispatcher.start(on_message=seen.append)
    job_id = await EchoTask.send({"hello": "world"}, queue=queue)

    await asyncio.wait_for(done.wait(), timeout=5)
    await dispatcher.stop()

    assert [job.id for job in seen] == [job_id]


async def test_register_workers_runs_before_worker_loops(task_registry, local_settings):
    class LateTask(BaseTask):
        queue_name = "late"

    dispatcher, built = make_dispatcher(task_registry, local_settings, RecordingQueue)
    await dispatcher.start(register_workers=lambda: task_registry.register(LateTask))

    assert built[0].worked == ["late"]
    await dispatcher.stop()


async def test_register_workers_skipped_when_disabled(task_registry):
    settings = Settings(deployment_mode="local-dev", queue_enable_workers=False)
    called = []

    dispatcher, _ = make_dispatcher(task_registry, settings)
    await dispatcher.start(register_workers=lambda: called.append(True))

    assert called == []
    await dispatcher.stop()


async def test_start_with_aborted_signal(task_registry, local_settings, queue_builder):
    token = CancellationToken()
    token.cancel()
    dispatcher = Dispatcher(registry=task_registry, queue_factory=queue_builder, settings=local_settings)

    with pytest.raises(Aborted):
        await dispatcher.start(signal=token)

    assert queue_builder.built == []
    with pytest.raises(QueueUninitialized):
        dispatcher.get_queue()


async def test_abort_after_start_stops_dispatcher(task_registry, local_settings):
    token = CancellationToken()
    dispatcher, built = make_dispatcher(task_registry, local_settings)
    await dispatcher.start(signal=token)

    token.cancel("shutting down")
    await asyncio.wait_for(built[0].stopped.wait(), timeout=5)

    async def is_stopped():
        return not dispatcher.started

    await wait_for(is_stopped)
    with pytest.raises(QueueUninitialized):
        dispatcher.get_queue()


async def test_stop_is_idempotent(task_registry, local_settings):
    dispatcher, built = make_dispatcher(task_registry, local_settings)
    await dispatcher.start()

    await asyncio.gather(dispatcher.stop(), dispatcher.stop())
    await dispatcher.stop()

    assert built[0].stopped.is_set()
    assert not dispatcher.started


async def test_restart_after_stop_opens_new_queue(task_registry, local_settings):
    dispatcher, built = make_dispatcher(task_registry, local_settings)
    first = await dispatcher.start()
    await dispatcher.stop()

    second = await dispatcher.start()
    await dispatcher.stop()

    assert first is not second
    assert len(built) == 2


async def test_multitenant_without_url_is_rejected(task_registry, queue_builder):
    settings = Settings(deployment_mode="local-dev", is_multitenant=True)
    dispatcher = Dispatcher(registry=task_registry, queue_factory=queue_builder, settings=settings)

    with pytest.raises(ConfigurationError):
        await dispatcher.start()
    assert queue_builder.built == []


def test_resolve_connection_target():
    assert resolve_connection_target(Settings(database_url="/tmp/queue")) == "/tmp/queue"
    assert resolve_connection_target(
        Settings(database_url="/tmp/queue", queue_connection_url="memory://")
    ) == "memory://"
    assert resolve_connection_target(
        Settings(database_url="/tmp/queue", is_multitenant=True, multitenant_database_url="/tmp/tenants")
    ) == "/tmp/tenants"


def test_module_queue_uninitialised():
    with pytest.raises(QueueUninitialized):
        dispatcher_module.get_queue()


class ClosingQueue(LocalJobQueue):
    """Local queue that refuses sends once closed; slow-retry sends take a while."""

    def __init__(self, options):
        super().__init__(options)
        self.closed = False
        self.sent = []

    async def _close(self):
        self.closed = True
        await super()._close()

    async def send(self, name, data, options=None):
        if name.endswith("-slow"):
            await asyncio.sleep(0.1)
        if self.closed:
            raise RuntimeError("queue is closed")
        self.sent.append(name)
        return await super().send(name, data, options)


async def test_stop_waits_for_escalation_from_draining_job(task_registry, local_settings):
    handler_started = asyncio.Event()

    @task_registry.register
    class LastAttemptTask(BaseTask):
        queue_name = "last-attempt"
        slow_retry_queue_name = "last-attempt-slow"
        worker_options = FAST_WITH_METADATA
        send_options = SendOptions(retry_limit=0)

        @classmethod
        async def handle(cls, job):
            handler_started.set()
            await asyncio.sleep(0.2)
            raise RuntimeError("failed while stopping")

    dispatcher, built = make_dispatcher(task_registry, local_settings, ClosingQueue)
    queue = await dispatcher.start()
    await LastAttemptTask.send({"key": "value"}, queue=queue)
    await handler_started.wait()

    await dispatcher.stop()

    assert built[0].closed
    assert built[0].sent.count("last-attempt-slow") == 1
    assert not dispatcher._escalations


class UnreachableQueue(LocalJobQueue):
    async def _open(self):
        raise ConnectionError("connection refused")


async def test_connection_error_on_start_propagates(task_registry, local_settings):
    dispatcher, _ = make_dispatcher(task_registry, local_settings, UnreachableQueue)

    with pytest.raises(ConnectionError, match="connection refused"):
        await dispatcher.start()

    assert not dispatcher.started
    with pytest.raises(QueueUninitialized):
        dispatcher.get_queue()


class FlakyFetchQueue(LocalJobQueue):
    def __init__(self, options):
        super().__init__(options)
        self.fetch_failures = 2

    async def fetch(self, name, batch_size=1, include_metadata=False):
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise ConnectionError("connection reset")
        return await super().fetch(name, batch_size, include_metadata)


async def test_fetch_error_is_reported_and_worker_keeps_polling(task_registry, local_settings, caplog):
    handled = []

    @task_registry.register
    class PollingTask(BaseTask):
        queue_name = "keeps-polling"
        worker_options = FAST

        @classmethod
        async def handle(cls, job):
            handled.append(job.id)

    dispatcher, built = make_dispatcher(task_registry, local_settings, FlakyFetchQueue)
    with caplog.at_level(logging.ERROR):
        queue = await dispatcher.start()
        job_id = await PollingTask.send({}, queue=queue)

        async def is_completed():
            return await job_state(queue, "keeps-polling", job_id) == JobState.COMPLETED

        await wait_for(is_completed)
        await dispatcher.stop()

    assert built[0].fetch_failures == 0
    assert handled == [job_id]
    assert "[Queue] Error: connection reset" in caplog.text
