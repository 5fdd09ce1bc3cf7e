"""
Job queue capability.

The durable queue owns job state: it leases jobs to workers and decides,
from the outcome it is told about, whether a job is completed, retried
or failed for good. `JobQueue` describes that capability and hosts the
polling worker loop shared by every implementation.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from storage_jobs.errors import QueueUninitialized
from storage_jobs.jobs.models import Job, JobWithMetadata
from storage_jobs.settings import Settings

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]
ErrorListener = Callable[[BaseException], Any]
CloseHook = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class WorkerOptions:
    """How a worker consumes one queue."""
    concurrency: int = 1
    polling_interval_seconds: float = 2.0
    batch_size: int = 1
    include_metadata: bool = False


@dataclass(frozen=True)
class SendOptions:
    """Per-job overrides of the queue-wide retry and scheduling defaults."""
    priority: int = 0
    retry_limit: Optional[int] = None
    retry_delay: Optional[float] = None
    retry_backoff: Optional[bool] = None
    expire_in_seconds: Optional[float] = None
    start_after_seconds: float = 0
    singleton_key: Optional[str] = None


@dataclass(frozen=True)
class QueueOptions:
    """Fixed operational parameters of a queue connection."""
    connection_string: Optional[str] = None
    max_connections: int = 4
    application_name: str = "storage-jobs"
    delete_after_days: int = 7
    archive_completed_after_seconds: int = 43200
    retention_days: int = 30
    retry_backoff: bool = True
    retry_limit: int = 20
    retry_delay: float = 1.0
    expire_in_hours: float = 48
    maintenance_interval_seconds: float = 120

    @classmethod
    def from_settings(cls, settings: Settings, connection_string: Optional[str]) -> "QueueOptions":
        return cls(
            connection_string=connection_string,
            max_connections=4,
            application_name=f"{settings.app_name}-queue",
            delete_after_days=settings.queue_delete_after_days,
            archive_completed_after_seconds=settings.queue_archive_completed_after_seconds,
            retention_days=settings.queue_retention_days,
            retry_backoff=True,
            retry_limit=20,
            expire_in_hours=48,
        )

    @property
    def expire_in_seconds(self) -> float:
        return self.expire_in_hours * 3600


class JobQueue(ABC):
    """Base class for job queues (to be extended by specific implementations)"""

    def __init__(self, options: QueueOptions):
        self.options = options
        self.stopped = asyncio.Event()
        self._error_listeners: List[ErrorListener] = []
        self._workers: Dict[str, List[asyncio.Task]] = {}
        self._wake = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._close_hooks: List[CloseHook] = []
        self._started = False
        self._stopping = False
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def stopping(self) -> bool:
        return self._stopping

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def before_close(self, hook: CloseHook) -> None:
        """Run `hook` once the workers have drained, before resources are released."""
        self._close_hooks.append(hook)

    def emit_error(self, error: BaseException) -> None:
        if not self._error_listeners:
            logger.error(f"Unhandled queue error: {error!r}")
            return
        for listener in self._error_listeners:
            try:
                listener(error)
            except Exception:
                logger.exception("Queue error listener failed")

    async def start(self) -> None:
        """Open the connection; errors here propagate to the caller."""
        if self._started:
            return
        await self._open()
        self._started = True

    @abstractmethod
    async def _open(self) -> None:
        ...

    @abstractmethod
    async def _close(self) -> None:
        ...

    @abstractmethod
    async def send(self, name: str, data: Dict[str, Any], options: Optional[SendOptions] = None) -> Optional[str]:
        """Submit a job; returns its id, or None when a singleton job is already queued."""

    @abstractmethod
    async def fetch(self, name: str, batch_size: int = 1, include_metadata: bool = False) -> List[Job]:
        """Lease up to `batch_size` jobs of `name`."""

    @abstractmethod
    async def complete(self, name: str, job_id: str, output: Any = None) -> None:
        ...

    @abstractmethod
    async def fail(self, name: str, job_id: str, error: Optional[BaseException] = None) -> None:
        """Record a failed attempt; the queue decides between retry and failed."""

    @abstractmethod
    async def get_job_by_id(self, name: str, job_id: str) -> Optional[JobWithMetadata]:
        ...

    async def work(self, name: str, options: WorkerOptions, handler: JobHandler) -> str:
        """Start `options.concurrency` polling loops on `name`; returns the worker id."""
        if self._stopping:
            raise QueueUninitialized("job queue is stopping")
        if not self._started:
            raise QueueUninitialized()

        worker_id = uuid.uuid4().hex
        self._workers[worker_id] = [
            asyncio.create_task(
                self._worker_loop(name, options, handler),
                name=f"worker:{name}:{worker_id[:8]}:{slot}",
            )
            for slot in range(max(1, options.concurrency))
        ]
        logger.info(f"Worker {worker_id} listening on {name} (concurrency={options.concurrency})")
        return worker_id

    async def stop(self, timeout: float = 20, graceful: bool = True, destroy: bool = True) -> None:
        """
        Request shutdown and return immediately.

        Workers get `timeout` seconds to finish in-flight jobs when `graceful`
        is set; whatever is left is cancelled. With `destroy` the underlying
        resources are closed too. `stopped` is set once everything is down.
        """
        if self._shutdown_task is not None:
            return
        self._stopping = True
        self._stop_requested.set()
        self._wake.set()
        self._shutdown_task = asyncio.create_task(self._shutdown(timeout, graceful, destroy))

    async def _shutdown(self, timeout: float, graceful: bool, destroy: bool) -> None:
        tasks = [task for slots in self._workers.values() for task in slots]
        try:
            if tasks:
                pending = set(tasks)
                if graceful:
                    _, pending = await asyncio.wait(tasks, timeout=timeout)
                    if pending:
                        logger.warning(f"{len(pending)} worker(s) still busy after {timeout}s, cancelling")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            self._workers.clear()

            for hook in self._close_hooks:
                try:
                    await hook()
                except Exception as e:
                    self.emit_error(e)

            if destroy:
                await self._close()
        except Exception as e:
            self.emit_error(e)
        finally:
            logger.info("Job queue stopped")
            self.stopped.set()

    def _notify(self) -> None:
        """Wake idle workers, e.g. after a send."""
        if not self._stopping:
            self._wake.set()
            self._wake.clear()

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _sleep_until_stop(self, seconds: float) -> None:
        """Like `_idle`, but sends do not cut the sleep short."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _expire_seconds(self, job: Job) -> float:
        if isinstance(job, JobWithMetadata):
            return job.expire_in.total_seconds()
        return self.options.expire_in_seconds

    async def _worker_loop(self, name: str, options: WorkerOptions, handler: JobHandler) -> None:
        while not self._stopping:
            try:
                jobs = await self.fetch(name, options.batch_size, options.include_metadata)
            except Exception as e:
                self.emit_error(e)
                jobs = []

            if not jobs:
                await self._idle(options.polling_interval_seconds)
                continue

            for job in jobs:
                await self._process(name, job, handler)

    async def _process(self, name: str, job: Job, handler: JobHandler) -> None:
        try:
            output = await asyncio.wait_for(handler(job), timeout=self._expire_seconds(job))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            try:
                await self.fail(name, job.id, e)
            except Exception as fail_error:
                self.emit_error(fail_error)
            return

        try:
            await self.complete(name, job.id, output)
        except Exception as e:
            self.emit_error(e)
