"""
In-process job queue.

Jobs live in memory and, when the connection target names a directory,
are snapshotted one JSON file per job under `<dir>/<queue name>/` so a
restarted worker picks up where the last one left off.
"""
import asyncio
import copy
import json
import logging
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from storage_jobs.adapters.queue.base import JobQueue, QueueOptions, SendOptions
from storage_jobs.errors import ConfigurationError
from storage_jobs.jobs.models import Job, JobState, JobWithMetadata, utcnow

logger = logging.getLogger(__name__)

PENDING_STATES = (JobState.CREATED, JobState.RETRY)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


def resolve_queue_dir(connection_string: Optional[str]) -> Optional[Path]:
    """`None`, empty or `memory://` keeps jobs in memory only."""
    if not connection_string or connection_string.startswith("memory:"):
        return None
    if connection_string.startswith("file://"):
        return Path(connection_string[len("file://"):])
    if "://" in connection_string:
        raise ConfigurationError(f"Unsupported local queue target: {connection_string}")
    return Path(connection_string)


class LocalJobQueue(JobQueue):
    """Priority-then-FIFO queue with retry backoff and periodic maintenance"""

    def __init__(self, options: QueueOptions):
        super().__init__(options)
        self.queue_dir = resolve_queue_dir(options.connection_string)
        self._jobs: Dict[str, JobWithMetadata] = {}
        self._archive: Dict[str, JobWithMetadata] = {}
        self._maintenance_task: Optional[asyncio.Task] = None

    async def _open(self) -> None:
        if self.queue_dir is not None:
            self.queue_dir.mkdir(parents=True, exist_ok=True)
            self._load()

        self._maintenance_task = asyncio.create_task(self._maintenance_loop(), name="queue-maintenance")
        logger.info(f"LocalJobQueue started ({self.queue_dir or 'in-memory'}, {len(self._jobs)} job(s) restored)")

    async def _close(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        # leases do not survive the process
        for job in self._jobs.values():
            if job.state == JobState.ACTIVE:
                job.state = JobState.RETRY
                self._persist(job)

    async def send(self, name: str, data: Dict[str, Any], options: Optional[SendOptions] = None) -> Optional[str]:
        options = options or SendOptions()

        if options.singleton_key is not None:
            for job in self._jobs.values():
                if (
                    job.name == name
                    and job.singleton_key == options.singleton_key
                    and job.state not in TERMINAL_STATES
                ):
                    logger.info(f"Skipping {name}: singleton {options.singleton_key} already queued as {job.id}")
                    return None

        now = utcnow()
        expire_in = options.expire_in_seconds or self.options.expire_in_seconds
        job = JobWithMetadata(
            id=str(uuid.uuid4()),
            name=name,
            data=copy.deepcopy(dict(data)),
            priority=options.priority,
            state=JobState.CREATED,
            retry_limit=self.options.retry_limit if options.retry_limit is None else options.retry_limit,
            retry_delay=self.options.retry_delay if options.retry_delay is None else options.retry_delay,
            retry_backoff=self.options.retry_backoff if options.retry_backoff is None else options.retry_backoff,
            start_after=now + timedelta(seconds=options.start_after_seconds),
            created_on=now,
            expire_in=timedelta(seconds=expire_in),
            singleton_key=options.singleton_key,
        )
        self._jobs[job.id] = job
        self._persist(job)
        logger.debug(f"Queued job {job.id} on {name}")

        self._notify()
        return job.id

    async def fetch(self, name: str, batch_size: int = 1, include_metadata: bool = False) -> List[Job]:
        now = utcnow()
        candidates = sorted(
            (
                job for job in self._jobs.values()
                if job.name == name and job.state in PENDING_STATES and job.start_after <= now
            ),
            key=lambda job: (-job.priority, job.created_on),
        )

        leased: List[Job] = []
        for job in candidates[:max(1, batch_size)]:
            job.state = JobState.ACTIVE
            job.started_on = now
            self._persist(job)
            leased.append(copy.deepcopy(job) if include_metadata else copy.deepcopy(job.to_job()))
        return leased

    async def complete(self, name: str, job_id: str, output: Any = None) -> None:
        job = self._active_job(name, job_id)
        if job is None:
            return
        job.state = JobState.COMPLETED
        job.completed_on = utcnow()
        job.output = output
        self._persist(job)

    async def fail(self, name: str, job_id: str, error: Optional[BaseException] = None) -> None:
        job = self._active_job(name, job_id)
        if job is None:
            return

        now = utcnow()
        job.output = {"message": str(error)} if error is not None else None
        if job.retry_count < job.retry_limit:
            delay = self.retry_delay_seconds(job)
            job.retry_count += 1
            job.state = JobState.RETRY
            job.start_after = now + timedelta(seconds=delay)
            logger.info(f"Job {job.id} on {name} retry {job.retry_count}/{job.retry_limit} in {delay}s")
        else:
            job.state = JobState.FAILED
            job.completed_on = now
            logger.warning(f"Job {job.id} on {name} failed after {job.retry_count} retries")
        self._persist(job)

    @staticmethod
    def retry_delay_seconds(job: JobWithMetadata) -> float:
        if job.retry_backoff:
            return job.retry_delay * (2 ** job.retry_count)
        return job.retry_delay

    async def get_job_by_id(self, name: str, job_id: str) -> Optional[JobWithMetadata]:
        job = self._jobs.get(job_id) or self._archive.get(job_id)
        if job is None or job.name != name:
            return None
        return copy.deepcopy(job)

    async def get_queue_size(self, name: str) -> int:
        """Number of jobs waiting (created or retry) on `name`."""
        return sum(1 for job in self._jobs.values() if job.name == name and job.state in PENDING_STATES)

    async def maintain(self) -> None:
        """Archive finished jobs, drop never-started ones and purge the archive."""
        now = utcnow()
        archive_before = now - timedelta(seconds=self.options.archive_completed_after_seconds)
        retention_before = now - timedelta(days=self.options.retention_days)
        delete_before = now - timedelta(days=self.options.delete_after_days)

        for job in list(self._jobs.values()):
            if job.state in TERMINAL_STATES and (job.completed_on or job.created_on) <= archive_before:
                self._archive[job.id] = self._jobs.pop(job.id)
                self._unlink(job)
            elif job.state == JobState.CREATED and job.created_on <= retention_before:
                del self._jobs[job.id]
                self._unlink(job)
                logger.info(f"Dropped job {job.id} on {job.name}: never started within retention")

        for job in list(self._archive.values()):
            if (job.completed_on or job.created_on) <= delete_before:
                del self._archive[job.id]

    async def _maintenance_loop(self) -> None:
        while not self.stopping:
            await self._sleep_until_stop(self.options.maintenance_interval_seconds)
            if self.stopping:
                break
            try:
                await self.maintain()
            except Exception as e:
                self.emit_error(e)

    def _active_job(self, name: str, job_id: str) -> Optional[JobWithMetadata]:
        job = self._jobs.get(job_id)
        if job is None or job.name != name or job.state != JobState.ACTIVE:
            logger.warning(f"Job {job_id} on {name} is not active, ignoring outcome")
            return None
        return job

    def _job_path(self, job: JobWithMetadata) -> Path:
        return self.queue_dir / job.name / f"{job.id}.json"

    def _persist(self, job: JobWithMetadata) -> None:
        if self.queue_dir is None:
            return
        path = self._job_path(job)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(job.to_dict(), f, default=str)
        tmp_path.replace(path)

    def _unlink(self, job: JobWithMetadata) -> None:
        if self.queue_dir is None:
            return
        self._job_path(job).unlink(missing_ok=True)

    def _load(self) -> None:
        for job_file in sorted(self.queue_dir.glob("*/*.json")):
            if job_file.parent.name == "errors":
                continue
            try:
                with open(job_file, "r") as f:
                    job = JobWithMetadata.from_dict(json.load(f))
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Error reading job file {job_file}: {e}")
                # Move problematic file to error directory
                error_dir = self.queue_dir / "errors"
                error_dir.mkdir(exist_ok=True)
                job_file.rename(error_dir / f"{job_file.parent.name}-{job_file.name}")
                continue

            if job.state == JobState.ACTIVE:
                job.state = JobState.RETRY
            self._jobs[job.id] = job
