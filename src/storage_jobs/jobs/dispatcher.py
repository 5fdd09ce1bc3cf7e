"""
Dispatcher: owns the process-wide queue handle and the worker loops.

Startup opens the queue once, however many callers race for it, attaches
one worker loop per registered task (plus one on its slow-retry queue)
and wires an optional cancellation token to a graceful shutdown.
"""
import asyncio
import inspect
import json
import logging
from dataclasses import asdict
from typing import Any, Callable, List, Optional, Set, Type

from storage_jobs.adapters.queue import JobQueue, QueueFactory, QueueOptions
from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import Aborted, ConfigurationError, QueueUninitialized
from storage_jobs.jobs.models import Job, JobWithMetadata
from storage_jobs.jobs.registry import TaskRegistry, registry as default_registry
from storage_jobs.jobs.tasks import BaseTask
from storage_jobs.metrics import QueueJobCompleted, QueueJobError, QueueJobRetryFailed
from storage_jobs.settings import Settings, get_settings

logger = logging.getLogger(__name__)

QUEUE_STOP_TIMEOUT_SECONDS = 20

QueueBuilder = Callable[[QueueOptions, Settings], JobQueue]
MessageCallback = Callable[[Job], Any]
RegisterWorkers = Callable[[], Any]


def resolve_connection_target(settings: Settings) -> Optional[str]:
    """Pick the queue connection target for this deployment."""
    if settings.queue_connection_url:
        return settings.queue_connection_url

    if settings.is_multitenant:
        if not settings.multitenant_database_url:
            raise ConfigurationError("multitenant_database_url is required in a multi-tenant deployment")
        return settings.multitenant_database_url

    return settings.database_url


def _job_metadata_json(job: Job) -> str:
    record = job.to_dict() if isinstance(job, JobWithMetadata) else asdict(job)
    return json.dumps(record, default=str)


class Dispatcher:
    def __init__(
        self,
        registry: Optional[TaskRegistry] = None,
        queue_factory: Optional[QueueBuilder] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry if registry is not None else default_registry
        self.queue_factory = queue_factory or QueueFactory.create
        self._settings = settings
        self._queue: Optional[JobQueue] = None
        self._lock = asyncio.Lock()
        self._escalations: Set[asyncio.Task] = set()
        self._worker_ids: List[str] = []
        self._remove_abort_callback: Optional[Callable[[], None]] = None
        self._abort_task: Optional[asyncio.Task] = None

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def started(self) -> bool:
        return self._queue is not None

    @property
    def worker_ids(self) -> List[str]:
        return list(self._worker_ids)

    def get_queue(self) -> JobQueue:
        if self._queue is None:
            raise QueueUninitialized()
        return self._queue

    async def start(
        self,
        signal: Optional[CancellationToken] = None,
        on_message: Optional[MessageCallback] = None,
        register_workers: Optional[RegisterWorkers] = None,
    ) -> JobQueue:
        if self._queue is not None:
            return self._queue

        async with self._lock:
            if self._queue is not None:
                return self._queue

            if signal is not None and signal.cancelled:
                raise Aborted("Cannot start queue with aborted signal")

            settings = self.settings
            options = QueueOptions.from_settings(settings, resolve_connection_target(settings))
            queue = self.queue_factory(options, settings)
            queue.on_error(self._log_queue_error)
            queue.before_close(self._drain_escalations)
            await queue.start()

            try:
                if register_workers is not None and settings.queue_enable_workers:
                    result = register_workers()
                    if inspect.isawaitable(result):
                        await result

                self._worker_ids = await self._start_workers(queue, self.registry.build(), on_message)
            except BaseException:
                await queue.stop(timeout=0, graceful=False, destroy=True)
                await queue.stopped.wait()
                raise

            self._queue = queue

        logger.info(
            f"[Queue] Started with {len(self._worker_ids)} worker loop(s)",
            extra={"type": "queue"},
        )

        if signal is not None:
            self._remove_abort_callback = signal.add_callback(self._on_abort)

        return queue

    async def stop(self) -> None:
        async with self._lock:
            queue = self._queue
            if queue is None:
                return

            # escalations are drained by the queue once its workers finish
            await queue.stop(timeout=QUEUE_STOP_TIMEOUT_SECONDS, graceful=True, destroy=True)
            await queue.stopped.wait()

            self._queue = None
            self._worker_ids = []
            if self._remove_abort_callback is not None:
                self._remove_abort_callback()
                self._remove_abort_callback = None

        logger.info("[Queue] Stopped", extra={"type": "queue"})

    def _on_abort(self) -> None:
        if self._abort_task is None or self._abort_task.done():
            self._abort_task = asyncio.get_running_loop().create_task(self._stop_on_abort())

    async def _stop_on_abort(self) -> None:
        logger.info("[Queue] Stopping", extra={"type": "queue"})
        try:
            await self.stop()
            logger.info("[Queue] Exited", extra={"type": "queue"})
        except Exception as e:
            logger.error(f"[Queue] Error while stopping queue: {e}", exc_info=True, extra={"type": "queue"})

    @staticmethod
    def _log_queue_error(error: BaseException) -> None:
        logger.error(
            f"[Queue] Error: {error}",
            exc_info=(type(error), error, error.__traceback__),
            extra={"type": "queue"},
        )

    async def _start_workers(
        self,
        queue: JobQueue,
        tasks: tuple,
        on_message: Optional[MessageCallback],
    ) -> List[str]:
        worker_ids = []
        for task in tasks:
            worker_ids.append(await queue.work(
                task.get_queue_name(),
                task.get_worker_options(),
                self._register_task(queue, task, on_message, slow=False),
            ))

            if task.with_slow_retry_queue():
                worker_ids.append(await queue.work(
                    task.get_slow_retry_queue_name(),
                    task.get_worker_options(slow=True),
                    self._register_task(queue, task, on_message, slow=True),
                ))
        return worker_ids

    def _register_task(
        self,
        queue: JobQueue,
        task: Type[BaseTask],
        on_message: Optional[MessageCallback],
        slow: bool,
    ):
        queue_name = task.get_slow_retry_queue_name() if slow else task.get_queue_name()
        metric_name = task.get_queue_name()

        async def handler(job: Job) -> Any:
            if on_message is not None:
                result = on_message(job)
                if inspect.isawaitable(result):
                    await result

            try:
                output = await task.handle(job)
                QueueJobCompleted.labels(name=metric_name).inc()
                return output
            except Exception as e:
                QueueJobRetryFailed.labels(name=metric_name).inc()

                record = await self._job_metadata(queue, queue_name, job)
                if record is not None and record.retries_exhausted:
                    QueueJobError.labels(name=metric_name).inc()
                    if not slow and task.with_slow_retry_queue():
                        self._escalate(queue, task, job)

                logger.error(
                    f"[Queue Handler] Error while processing job {queue_name}: {e}",
                    exc_info=True,
                    extra={
                        "type": "queue-task",
                        "metadata": _job_metadata_json(record or job),
                    },
                )
                raise

        return handler

    async def _job_metadata(self, queue: JobQueue, queue_name: str, job: Job) -> Optional[JobWithMetadata]:
        if isinstance(job, JobWithMetadata):
            return job

        try:
            record = await queue.get_job_by_id(queue_name, job.id)
        except Exception as e:
            logger.error(
                f"[Queue Handler] fetching job {job.id}: {e}",
                exc_info=True,
                extra={"type": "queue-task", "metadata": _job_metadata_json(job)},
            )
            return None

        if record is None:
            logger.warning(f"[Queue Handler] job {job.id} not found on {queue_name}", extra={"type": "queue-task"})
        return record

    def _escalate(self, queue: JobQueue, task: Type[BaseTask], job: Job) -> None:
        escalation = asyncio.create_task(
            task.send_slow_retry_queue(dict(job.data), queue=queue),
            name=f"slow-retry:{task.get_queue_name()}:{job.id}",
        )
        self._escalations.add(escalation)
        escalation.add_done_callback(self._escalation_done)

    async def _drain_escalations(self) -> None:
        while self._escalations:
            await asyncio.gather(*list(self._escalations), return_exceptions=True)

    def _escalation_done(self, escalation: asyncio.Task) -> None:
        self._escalations.discard(escalation)
        if escalation.cancelled():
            return
        error = escalation.exception()
        if error is not None:
            logger.error(
                f"[Queue] Error sending job to slow retry queue: {error}",
                exc_info=(type(error), error, error.__traceback__),
                extra={"type": "queue-task"},
            )


dispatcher = Dispatcher()


async def start(
    signal: Optional[CancellationToken] = None,
    on_message: Optional[MessageCallback] = None,
    register_workers: Optional[RegisterWorkers] = None,
) -> JobQueue:
    return await dispatcher.start(signal=signal, on_message=on_message, register_workers=register_workers)


async def stop() -> None:
    await dispatcher.stop()


def get_queue() -> JobQueue:
    return dispatcher.get_queue()
