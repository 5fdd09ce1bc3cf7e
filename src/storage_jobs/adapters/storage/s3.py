"""S3-compatible implementation of the storage contract."""
import logging
from dataclasses import dataclass
from typing import List, Optional, Union, BinaryIO

import boto3
from botocore.config import Config

from storage_jobs.adapters.storage.client import (
    assume_role_session,
    get_default_agent,
    send,
    status_code,
)
from storage_jobs.adapters.storage.disk import (
    DEFAULT_CACHE_CONTROL,
    DEFAULT_MIMETYPE,
    SIGNED_URL_EXPIRES_IN,
    Body,
    ByteRange,
    CompletedUpload,
    CopyConditions,
    CopyResult,
    ObjectMetadata,
    ObjectRef,
    ObjectResponse,
    ReadHeaders,
    StorageDisk,
    UploadPart,
    UploadPartCopyResult,
    build_key_path,
    parse_http_date,
)
from storage_jobs.adapters.storage.upload import ParallelUpload
from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import InvalidUploadSession, StorageBackendError

logger = logging.getLogger(__name__)


@dataclass
class S3DiskOptions:
    bucket: str
    endpoint: Optional[str] = None
    region: Optional[str] = None
    prefix: Optional[str] = None
    force_path_style: bool = False
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    role_arn: Optional[str] = None
    connection_pool_override: Optional[Config] = None


def _metadata_from_response(data: dict, http_status_code: Optional[int] = None) -> ObjectMetadata:
    content_length = data.get("ContentLength") or 0
    return ObjectMetadata(
        cache_control=data.get("CacheControl") or DEFAULT_CACHE_CONTROL,
        mimetype=data.get("ContentType") or DEFAULT_MIMETYPE,
        e_tag=data.get("ETag") or "",
        last_modified=data.get("LastModified"),
        content_length=content_length,
        size=content_length,
        content_range=data.get("ContentRange"),
        http_status_code=http_status_code or status_code(data),
    )


class S3Disk(StorageDisk):
    """
    Interacts with an S3-compatible object store.

    All tenant buckets live as key prefixes inside one master bucket.
    """

    def __init__(self, options: S3DiskOptions):
        config = options.connection_pool_override or get_default_agent()
        if options.force_path_style:
            config = config.merge(Config(s3={"addressing_style": "path"}))

        client_kwargs = {"config": config}
        if options.region:
            client_kwargs["region_name"] = options.region
        if options.endpoint:
            client_kwargs["endpoint_url"] = options.endpoint

        session = boto3.Session()
        if options.access_key and options.secret_key:
            client_kwargs["aws_access_key_id"] = options.access_key
            client_kwargs["aws_secret_access_key"] = options.secret_key
        elif options.role_arn:
            session = assume_role_session(options.role_arn, options.region, options.endpoint)

        self.client = session.client("s3", **client_kwargs)
        self.master_bucket = options.bucket
        self.prefix = options.prefix

        logger.info(f"S3Disk initialized")
        logger.info(f"  Bucket: {self.master_bucket}")
        logger.info(f"  Endpoint: {options.endpoint}")
        logger.info(f"  Prefix: {self.prefix}")

    async def read(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        headers: Optional[ReadHeaders] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectResponse:
        params = {"Bucket": self.master_bucket, "Key": self.key_path(bucket, key, version)}
        if headers:
            if headers.if_none_match:
                params["IfNoneMatch"] = headers.if_none_match
            if headers.if_modified_since:
                params["IfModifiedSince"] = parse_http_date(headers.if_modified_since)
            if headers.range:
                params["Range"] = headers.range

        try:
            data = await send(self.client, "get_object", signal, **params)
        except StorageBackendError as e:
            if e.http_status_code == 304:
                return ObjectResponse(
                    metadata=ObjectMetadata(
                        e_tag=(headers.if_none_match if headers else None) or "",
                        http_status_code=304,
                    ),
                    body=None,
                    http_status_code=304,
                )
            raise

        http_status_code = status_code(data)
        return ObjectResponse(
            metadata=_metadata_from_response(data, http_status_code),
            body=data.get("Body"),
            http_status_code=http_status_code,
        )

    async def save(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        body: Body,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectMetadata:
        try:
            upload = ParallelUpload(
                self.client,
                bucket=self.master_bucket,
                key=self.key_path(bucket, key, version),
                body=body,
                content_type=content_type,
                cache_control=cache_control,
                signal=signal,
            )
            data = await upload.done()

            metadata = await self.metadata(bucket, key, version, signal=signal)
            metadata.http_status_code = status_code(data, metadata.http_status_code)
            if cache_control:
                metadata.cache_control = cache_control
            return metadata
        except Exception as e:
            raise StorageBackendError.from_error(e) from e

    async def delete(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        await send(
            self.client,
            "delete_object",
            signal,
            Bucket=self.master_bucket,
            Key=self.key_path(bucket, key, version),
        )

    async def delete_many(
        self,
        bucket: str,
        prefixes: List[str],
        signal: Optional[CancellationToken] = None,
    ) -> None:
        if not prefixes:
            return
        objects = [{"Key": self.key_path(bucket, prefix)} for prefix in prefixes]
        response = await send(
            self.client,
            "delete_objects",
            signal,
            Bucket=self.master_bucket,
            Delete={"Objects": objects, "Quiet": True},
        )
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise StorageBackendError(
                first.get("Code") or "DeleteObjectsFailed",
                500,
                f"Failed to delete {len(errors)} of {len(objects)} objects: {first.get('Message', '')}",
            )

    async def copy(
        self,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        conditions: Optional[CopyConditions] = None,
        signal: Optional[CancellationToken] = None,
    ) -> CopyResult:
        params = {
            "Bucket": self.master_bucket,
            "CopySource": f"{self.master_bucket}/{self.key_path(from_ref.bucket, from_ref.key, from_ref.version)}",
            "Key": self.key_path(to_ref.bucket, to_ref.key, to_ref.version),
        }
        if conditions:
            if conditions.if_match:
                params["CopySourceIfMatch"] = conditions.if_match
            if conditions.if_none_match:
                params["CopySourceIfNoneMatch"] = conditions.if_none_match
            if conditions.if_modified_since:
                params["CopySourceIfModifiedSince"] = conditions.if_modified_since
            if conditions.if_unmodified_since:
                params["CopySourceIfUnmodifiedSince"] = conditions.if_unmodified_since

        data = await send(self.client, "copy_object", signal, **params)
        result = data.get("CopyObjectResult") or {}
        return CopyResult(
            http_status_code=status_code(data),
            e_tag=result.get("ETag") or "",
            last_modified=result.get("LastModified"),
        )

    async def metadata(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectMetadata:
        data = await send(
            self.client,
            "head_object",
            signal,
            Bucket=self.master_bucket,
            Key=self.key_path(bucket, key, version),
        )
        return _metadata_from_response(data)

    async def sign_url(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        return await send(
            self.client,
            "generate_presigned_url",
            signal,
            ClientMethod="get_object",
            Params={"Bucket": self.master_bucket, "Key": self.key_path(bucket, key, version)},
            ExpiresIn=SIGNED_URL_EXPIRES_IN,
        )

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        params = {
            "Bucket": self.master_bucket,
            "Key": self.key_path(bucket, key, version),
            "Metadata": {"Version": version or ""},
        }
        if content_type:
            params["ContentType"] = content_type
        if cache_control:
            params["CacheControl"] = cache_control

        response = await send(self.client, "create_multipart_upload", signal, **params)
        upload_id = response.get("UploadId")
        if not upload_id:
            raise InvalidUploadSession()
        return upload_id

    async def upload_part(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        part_number: int,
        body: Union[bytes, BinaryIO],
        length: Optional[int] = None,
        signal: Optional[CancellationToken] = None,
    ) -> UploadPart:
        params = {
            "Bucket": self.master_bucket,
            "Key": self.key_path(bucket, key, version),
            "UploadId": upload_id,
            "PartNumber": part_number,
            "Body": body,
        }
        if length is not None:
            params["ContentLength"] = length

        response = await send(self.client, "upload_part", signal, **params)
        return UploadPart(part_number=part_number, e_tag=response.get("ETag") or "")

    async def upload_part_copy(
        self,
        upload_id: str,
        part_number: int,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        byte_range: Optional[ByteRange] = None,
        signal: Optional[CancellationToken] = None,
    ) -> UploadPartCopyResult:
        params = {
            "Bucket": self.master_bucket,
            "Key": self.key_path(to_ref.bucket, to_ref.key, to_ref.version),
            "UploadId": upload_id,
            "PartNumber": part_number,
            "CopySource": f"{self.master_bucket}/{self.key_path(from_ref.bucket, from_ref.key, from_ref.version)}",
        }
        if byte_range:
            params["CopySourceRange"] = byte_range.header()

        response = await send(self.client, "upload_part_copy", signal, **params)
        result = response.get("CopyPartResult") or {}
        return UploadPartCopyResult(
            e_tag=result.get("ETag"),
            last_modified=result.get("LastModified"),
        )

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        parts: Optional[List[UploadPart]] = None,
        signal: Optional[CancellationToken] = None,
    ) -> CompletedUpload:
        key_path = self.key_path(bucket, key, version)

        if parts is None:
            listed = await send(
                self.client,
                "list_parts",
                signal,
                Bucket=self.master_bucket,
                Key=key_path,
                UploadId=upload_id,
            )
            parts = [
                UploadPart(part_number=part["PartNumber"], e_tag=part["ETag"])
                for part in listed.get("Parts") or []
            ]

        response = await send(
            self.client,
            "complete_multipart_upload",
            signal,
            Bucket=self.master_bucket,
            Key=key_path,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"PartNumber": part.part_number, "ETag": part.e_tag}
                    for part in sorted(parts, key=lambda part: part.part_number)
                ]
            },
        )
        return CompletedUpload(
            bucket=bucket,
            key=key,
            version=version,
            location=key,
            e_tag=response.get("ETag"),
            http_status_code=status_code(response),
        )

    async def abort_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        await send(
            self.client,
            "abort_multipart_upload",
            signal,
            Bucket=self.master_bucket,
            Key=self.key_path(bucket, key, version),
            UploadId=upload_id,
        )

    def key_path(self, bucket: str, key: str, version: Optional[str] = None) -> str:
        return build_key_path(bucket, key, version, self.prefix)
