"""
Job queue backends.

`QueueFactory` picks the implementation from settings, the same way the
storage factory does.
"""
import logging
from typing import Optional

from storage_jobs.adapters.queue.base import (
    JobHandler,
    JobQueue,
    QueueOptions,
    SendOptions,
    WorkerOptions,
)
from storage_jobs.settings import Settings, get_settings

logger = logging.getLogger(__name__)

__all__ = [
    "JobHandler",
    "JobQueue",
    "QueueFactory",
    "QueueOptions",
    "SendOptions",
    "WorkerOptions",
]


class QueueFactory:
    """Factory to initialize the correct job queue based on deployment mode"""

    @staticmethod
    def create(options: QueueOptions, settings: Optional[Settings] = None) -> JobQueue:
        settings = settings or get_settings()
        backend = settings.resolved_queue_backend

        logger.info(f"Creating job queue for backend: {backend}")
        if backend == "sqs":
            from storage_jobs.adapters.queue.sqs import SQSJobQueue

            return SQSJobQueue(options, settings)

        from storage_jobs.adapters.queue.local import LocalJobQueue

        return LocalJobQueue(options)
