"""
Task definitions.

A task is a class: it names the queue it consumes, optionally a slow-retry
queue taking over once the primary queue's retries are exhausted, and the
`handle` coroutine run for every leased job.
"""
import copy
import logging
from typing import Any, ClassVar, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict

from storage_jobs.adapters.queue.base import JobQueue, SendOptions, WorkerOptions
from storage_jobs.errors import ConfigurationError
from storage_jobs.jobs.models import Job

logger = logging.getLogger(__name__)

Payload = Union["BasePayload", Dict[str, Any]]


class BasePayload(BaseModel):
    """Fields every job payload may carry; tasks extend it with their own."""

    model_config = ConfigDict(extra="allow")

    tenant_ref: Optional[str] = None
    request_id: Optional[str] = None


class BaseTask:
    queue_name: ClassVar[str] = ""
    slow_retry_queue_name: ClassVar[Optional[str]] = None

    worker_options: ClassVar[WorkerOptions] = WorkerOptions()
    slow_retry_worker_options: ClassVar[WorkerOptions] = WorkerOptions(polling_interval_seconds=10)

    send_options: ClassVar[SendOptions] = SendOptions()
    slow_retry_send_options: ClassVar[SendOptions] = SendOptions(retry_limit=5, retry_delay=60, retry_backoff=True)

    payload_model: ClassVar[Type[BasePayload]] = BasePayload

    @classmethod
    def get_queue_name(cls) -> str:
        return cls.queue_name

    @classmethod
    def get_slow_retry_queue_name(cls) -> Optional[str]:
        return cls.slow_retry_queue_name

    @classmethod
    def with_slow_retry_queue(cls) -> bool:
        return bool(cls.slow_retry_queue_name)

    @classmethod
    def get_worker_options(cls, slow: bool = False) -> WorkerOptions:
        return cls.slow_retry_worker_options if slow else cls.worker_options

    @classmethod
    def parse_payload(cls, job: Job) -> BasePayload:
        return cls.payload_model.model_validate(job.data)

    @classmethod
    async def handle(cls, job: Job) -> Any:
        raise NotImplementedError(f"{cls.__name__} does not implement handle()")

    @classmethod
    async def send(
        cls,
        payload: Payload,
        queue: Optional[JobQueue] = None,
        options: Optional[SendOptions] = None,
    ) -> Optional[str]:
        """Submit `payload` to this task's queue; returns the job id."""
        queue = queue or _default_queue()
        return await queue.send(cls.get_queue_name(), _dump(payload), options or cls.send_options)

    @classmethod
    async def send_slow_retry_queue(cls, payload: Payload, queue: Optional[JobQueue] = None) -> Optional[str]:
        if not cls.with_slow_retry_queue():
            raise ConfigurationError(f"{cls.__name__} has no slow retry queue")

        queue = queue or _default_queue()
        job_id = await queue.send(cls.get_slow_retry_queue_name(), _dump(payload), cls.slow_retry_send_options)
        logger.info(f"Sent {cls.get_queue_name()} payload to {cls.get_slow_retry_queue_name()} as {job_id}")
        return job_id


def _dump(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", exclude_none=True)
    return copy.deepcopy(dict(payload))


def _default_queue() -> JobQueue:
    from storage_jobs.jobs.dispatcher import get_queue

    return get_queue()
