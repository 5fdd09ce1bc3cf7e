"""
Built-in storage maintenance tasks.

Both are registered on the default registry at import time; the worker
CLI imports this module before starting the dispatcher.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from storage_jobs.adapters.queue.base import SendOptions, WorkerOptions
from storage_jobs.adapters.storage import get_storage_disk
from storage_jobs.adapters.storage.disk import ByteRange, ObjectRef, StorageDisk, UploadPart
from storage_jobs.errors import HandlerError
from storage_jobs.jobs.models import Job
from storage_jobs.jobs.registry import registry
from storage_jobs.jobs.tasks import BasePayload, BaseTask

logger = logging.getLogger(__name__)

# Objects above this size are copied part by part
COPY_PART_SIZE = 500 * 1024 * 1024


class ObjectDeletePayload(BasePayload):
    bucket: str
    prefixes: List[str] = Field(default_factory=list)


class BackupObjectPayload(BasePayload):
    bucket: str
    key: str
    version: Optional[str] = None
    backup_bucket: Optional[str] = None
    backup_key: str
    backup_version: Optional[str] = None
    size: Optional[int] = None


@registry.register
class ObjectDeleteTask(BaseTask):
    """Removes a batch of object keys (and their version paths) from a bucket."""

    queue_name = "object-admin-delete"
    slow_retry_queue_name = "object-admin-delete-slow"
    worker_options = WorkerOptions(concurrency=2, polling_interval_seconds=1, include_metadata=True)
    send_options = SendOptions(retry_limit=3, retry_delay=5, expire_in_seconds=30 * 60)
    payload_model = ObjectDeletePayload

    @classmethod
    async def handle(cls, job: Job, disk: Optional[StorageDisk] = None) -> Dict[str, Any]:
        payload = cls.parse_payload(job)
        if not payload.prefixes:
            logger.info(f"Job {job.id}: nothing to delete in {payload.bucket}")
            return {"deleted": 0}

        disk = disk or get_storage_disk()
        await disk.delete_many(payload.bucket, payload.prefixes)
        logger.info(f"Job {job.id}: deleted {len(payload.prefixes)} object(s) from {payload.bucket}")
        return {"deleted": len(payload.prefixes)}


@registry.register
class BackupObjectTask(BaseTask):
    """Copies an object to its backup location, part by part when it is large."""

    queue_name = "backup-object"
    slow_retry_queue_name = "backup-object-slow"
    worker_options = WorkerOptions(concurrency=4, polling_interval_seconds=1, include_metadata=True)
    send_options = SendOptions(retry_limit=5, retry_delay=5, expire_in_seconds=60 * 60)
    payload_model = BackupObjectPayload

    copy_part_size = COPY_PART_SIZE

    @classmethod
    async def handle(cls, job: Job, disk: Optional[StorageDisk] = None) -> Dict[str, Any]:
        payload = cls.parse_payload(job)
        disk = disk or get_storage_disk()

        source = ObjectRef(payload.bucket, payload.key, payload.version)
        target = ObjectRef(payload.backup_bucket or payload.bucket, payload.backup_key, payload.backup_version)

        size = payload.size
        if size is None:
            size = (await disk.metadata(source.bucket, source.key, source.version)).size

        if size <= cls.copy_part_size:
            result = await disk.copy(source, target)
            logger.info(f"Job {job.id}: backed up {source.key} to {target.key}")
            return {"e_tag": result.e_tag, "parts": 0}

        parts = await cls.copy_in_parts(disk, source, target, size)
        logger.info(f"Job {job.id}: backed up {source.key} to {target.key} in {len(parts)} parts")
        return {"e_tag": None, "parts": len(parts)}

    @classmethod
    async def copy_in_parts(
        cls,
        disk: StorageDisk,
        source: ObjectRef,
        target: ObjectRef,
        size: int,
    ) -> List[UploadPart]:
        upload_id = await disk.create_multipart_upload(target.bucket, target.key, target.version)
        parts: List[UploadPart] = []
        try:
            for part_number, start in enumerate(range(0, size, cls.copy_part_size), start=1):
                end = min(start + cls.copy_part_size, size) - 1
                result = await disk.upload_part_copy(
                    upload_id, part_number, source, target, ByteRange(start, end),
                )
                if not result.e_tag:
                    raise HandlerError(f"Part {part_number} of {source.key} came back without an etag")
                parts.append(UploadPart(part_number=part_number, e_tag=result.e_tag))

            await disk.complete_multipart_upload(target.bucket, target.key, target.version, upload_id, parts)
        except Exception:
            try:
                await disk.abort_multipart_upload(target.bucket, target.key, target.version, upload_id)
            except Exception as abort_error:
                logger.error(f"Failed to abort backup upload {upload_id}: {abort_error}")
            raise
        return parts
