"""
Storage backends.

`create_storage_disk` picks the implementation from settings; `get_storage_disk`
returns the process-wide instance task handlers share.
"""
import logging
from functools import lru_cache
from typing import Optional

from storage_jobs.adapters.storage.disk import StorageDisk
from storage_jobs.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class StorageFactory:
    """Factory to initialize the correct storage disk based on deployment mode"""

    @staticmethod
    def create(settings: Optional[Settings] = None) -> StorageDisk:
        settings = settings or get_settings()
        backend = settings.resolved_storage_backend

        logger.info(f"Creating storage disk for backend: {backend}")
        if backend == "s3":
            from storage_jobs.adapters.storage.s3 import S3Disk, S3DiskOptions

            return S3Disk(S3DiskOptions(
                bucket=settings.storage_s3_bucket,
                endpoint=settings.aws_endpoint_url,
                region=settings.aws_region,
                prefix=settings.storage_key_prefix,
                force_path_style=settings.storage_s3_force_path_style,
                access_key=settings.aws_access_key_id,
                secret_key=settings.aws_secret_access_key,
                role_arn=settings.storage_s3_role_arn,
            ))

        from storage_jobs.adapters.storage.file import FileDisk, FileDiskOptions

        return FileDisk(FileDiskOptions(
            root=settings.storage_dir,
            prefix=settings.storage_key_prefix,
            signing_key=settings.storage_signing_key,
        ))


def create_storage_disk(settings: Optional[Settings] = None) -> StorageDisk:
    return StorageFactory.create(settings)


@lru_cache()
def get_storage_disk() -> StorageDisk:
    return StorageFactory.create()
