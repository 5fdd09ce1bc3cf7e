"""
Local file system implementation of the storage contract.

Used in local-dev mode. Objects live under `root/<key path>`, their
mimetype/cache-control/e-tag in a JSON sidecar under `root/.metadata/`, and
in-progress multipart uploads under `root/.multipart/<upload id>/`.
"""
import asyncio
import hashlib
import io
import json
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlencode

from itsdangerous import BadSignature, URLSafeTimedSerializer

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
from storage_jobs.adapters.storage.upload import iter_chunks
from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import StorageBackendError

logger = logging.getLogger(__name__)

METADATA_DIR = ".metadata"
MULTIPART_DIR = ".multipart"
WRITE_CHUNK_SIZE = 1024 * 1024

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


@dataclass
class FileDiskOptions:
    root: str
    prefix: Optional[str] = None
    signing_key: str = "local-signing-key"


def _not_found(key_path: str) -> StorageBackendError:
    return StorageBackendError("NoSuchKey", 404, f"The specified key does not exist: {key_path}")


def _precondition_failed() -> StorageBackendError:
    return StorageBackendError("PreconditionFailed", 412, "At least one of the pre-conditions you specified did not hold")


def _no_such_upload(upload_id: str) -> StorageBackendError:
    return StorageBackendError("NoSuchUpload", 404, f"The specified upload does not exist: {upload_id}")


def _invalid_key(key_path: str) -> StorageBackendError:
    return StorageBackendError("InvalidKey", 400, f"Key resolves outside the storage root: {key_path}")


def _same_etag(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip('"') == right.strip('"')


def _md5_etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


def _parse_range(header: str, size: int) -> Tuple[int, int]:
    match = _RANGE_PATTERN.match(header.strip())
    if not match or (not match.group(1) and not match.group(2)):
        raise StorageBackendError("InvalidRange", 416, f"Invalid range: {header}")

    start, end = match.group(1), match.group(2)
    if not start:
        # suffix range: last N bytes
        length = int(end)
        first = max(size - length, 0)
        last = size - 1
    else:
        first = int(start)
        last = min(int(end), size - 1) if end else size - 1

    if first >= size or first > last:
        raise StorageBackendError("InvalidRange", 416, f"The requested range is not satisfiable: {header}")
    return first, last


class FileDisk(StorageDisk):
    """Stores objects on the local file system."""

    def __init__(self, options: FileDiskOptions):
        self.root = Path(options.root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.prefix = options.prefix
        self.serializer = URLSafeTimedSerializer(options.signing_key, salt="file-disk-url")
        logger.info("FileDisk initialized at: %s", self.root)

    async def read(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        headers: Optional[ReadHeaders] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectResponse:
        return await self._run(signal, self._read, self.key_path(bucket, key, version), headers)

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
        key_path = self.key_path(bucket, key, version)
        target = self._object_path(key_path)
        temp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        digest = hashlib.md5()

        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            with open(temp, "wb") as f:
                async for chunk in iter_chunks(body, WRITE_CHUNK_SIZE, signal):
                    digest.update(chunk)
                    await asyncio.to_thread(f.write, chunk)
            if signal is not None:
                signal.raise_if_cancelled()

            os.replace(temp, target)
            self._write_metadata(key_path, {
                "mimetype": content_type or DEFAULT_MIMETYPE,
                "cache_control": cache_control or DEFAULT_CACHE_CONTROL,
                "e_tag": f'"{digest.hexdigest()}"',
            })
        except Exception as e:
            temp.unlink(missing_ok=True)
            raise StorageBackendError.from_error(e) from e
        except BaseException:
            temp.unlink(missing_ok=True)
            raise

        metadata = await self.metadata(bucket, key, version, signal=signal)
        metadata.http_status_code = 200
        return metadata

    async def delete(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        await self._run(signal, self._delete, self.key_path(bucket, key, version))

    async def delete_many(
        self,
        bucket: str,
        prefixes: List[str],
        signal: Optional[CancellationToken] = None,
    ) -> None:
        def delete_all() -> None:
            failures = []
            for prefix in prefixes:
                try:
                    self._delete(self.key_path(bucket, prefix))
                except OSError as e:
                    failures.append((prefix, e))
            if failures:
                prefix, error = failures[0]
                raise StorageBackendError(
                    "DeleteObjectsFailed",
                    500,
                    f"Failed to delete {len(failures)} of {len(prefixes)} objects: {prefix}: {error}",
                )

        await self._run(signal, delete_all)

    async def copy(
        self,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        conditions: Optional[CopyConditions] = None,
        signal: Optional[CancellationToken] = None,
    ) -> CopyResult:
        source = self.key_path(from_ref.bucket, from_ref.key, from_ref.version)
        destination = self.key_path(to_ref.bucket, to_ref.key, to_ref.version)
        return await self._run(signal, self._copy, source, destination, conditions)

    async def metadata(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectMetadata:
        return await self._run(signal, self._stat, self.key_path(bucket, key, version))

    async def sign_url(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        if signal is not None:
            signal.raise_if_cancelled()
        key_path = self.key_path(bucket, key, version)
        query = urlencode({"signature": self.serializer.dumps(key_path)})
        return f"{self._object_path(key_path).resolve().as_uri()}?{query}"

    def verify_signature(
        self,
        bucket: str,
        key: str,
        signature: str,
        version: Optional[str] = None,
        max_age: int = SIGNED_URL_EXPIRES_IN,
    ) -> bool:
        """Check a `signature` query value from `sign_url`. Expired or tampered tokens fail."""
        try:
            signed_path = self.serializer.loads(signature, max_age=max_age)
        except BadSignature:
            # SignatureExpired is a BadSignature
            return False
        return signed_path == self.key_path(bucket, key, version)

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        upload_id = uuid.uuid4().hex
        session = {
            "key_path": self.key_path(bucket, key, version),
            "version": version or "",
            "mimetype": content_type or DEFAULT_MIMETYPE,
            "cache_control": cache_control or DEFAULT_CACHE_CONTROL,
        }

        def create() -> None:
            upload_dir = self._upload_dir(upload_id)
            upload_dir.mkdir(parents=True)
            (upload_dir / "upload.json").write_text(json.dumps(session))

        await self._run(signal, create)
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
        key_path = self.key_path(bucket, key, version)

        def write_part() -> UploadPart:
            self._load_session(upload_id, key_path)
            data = body if isinstance(body, (bytes, bytearray)) else body.read(length) if length else body.read()
            data = bytes(data)
            self._part_path(upload_id, part_number).write_bytes(data)
            return UploadPart(part_number=part_number, e_tag=_md5_etag(data))

        return await self._run(signal, write_part)

    async def upload_part_copy(
        self,
        upload_id: str,
        part_number: int,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        byte_range: Optional[ByteRange] = None,
        signal: Optional[CancellationToken] = None,
    ) -> UploadPartCopyResult:
        source = self.key_path(from_ref.bucket, from_ref.key, from_ref.version)
        destination = self.key_path(to_ref.bucket, to_ref.key, to_ref.version)

        def copy_part() -> UploadPartCopyResult:
            self._load_session(upload_id, destination)
            source_path = self._object_path(source)
            if not source_path.is_file():
                raise _not_found(source)
            with open(source_path, "rb") as f:
                if byte_range:
                    f.seek(byte_range.from_byte)
                    data = f.read(byte_range.to_byte - byte_range.from_byte + 1)
                else:
                    data = f.read()
            part_path = self._part_path(upload_id, part_number)
            part_path.write_bytes(data)
            return UploadPartCopyResult(
                e_tag=_md5_etag(data),
                last_modified=self._last_modified(part_path),
            )

        return await self._run(signal, copy_part)

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

        def complete() -> str:
            session = self._load_session(upload_id, key_path)
            chosen = parts if parts is not None else self._list_parts(upload_id)
            chosen = sorted(chosen, key=lambda part: part.part_number)
            if not chosen:
                raise StorageBackendError("InvalidRequest", 400, "You must specify at least one part")

            target = self._object_path(key_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            temp = target.with_name(f".{target.name}.{upload_id}.tmp")
            digests = b""
            try:
                with open(temp, "wb") as out:
                    for part in chosen:
                        part_path = self._part_path(upload_id, part.part_number)
                        if not part_path.is_file():
                            raise StorageBackendError("InvalidPart", 400, f"Part {part.part_number} was not uploaded")
                        data = part_path.read_bytes()
                        digest = hashlib.md5(data)
                        if not _same_etag(part.e_tag, digest.hexdigest()):
                            raise StorageBackendError("InvalidPart", 400, f"ETag mismatch for part {part.part_number}")
                        digests += digest.digest()
                        out.write(data)
                os.replace(temp, target)
            finally:
                temp.unlink(missing_ok=True)

            e_tag = f'"{hashlib.md5(digests).hexdigest()}-{len(chosen)}"'
            self._write_metadata(key_path, {
                "mimetype": session["mimetype"],
                "cache_control": session["cache_control"],
                "e_tag": e_tag,
            })
            shutil.rmtree(self._upload_dir(upload_id), ignore_errors=True)
            return e_tag

        e_tag = await self._run(signal, complete)
        return CompletedUpload(
            bucket=bucket,
            key=key,
            version=version,
            location=key,
            e_tag=e_tag,
        )

    async def abort_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        key_path = self.key_path(bucket, key, version)

        def abort() -> None:
            self._load_session(upload_id, key_path)
            shutil.rmtree(self._upload_dir(upload_id))

        await self._run(signal, abort)

    def key_path(self, bucket: str, key: str, version: Optional[str] = None) -> str:
        """
        Raises:
            StorageBackendError: InvalidKey when the path leaves the disk root or
                lands in the metadata or multipart areas.
        """
        key_path = build_key_path(bucket, key, version, self.prefix)
        resolved = (self.root / key_path).resolve()
        root = self.root.resolve()
        if resolved == root or not resolved.is_relative_to(root):
            raise _invalid_key(key_path)
        if resolved.relative_to(root).parts[0] in (METADATA_DIR, MULTIPART_DIR):
            raise _invalid_key(key_path)
        return key_path

    async def _run(self, signal: Optional[CancellationToken], func: Callable[..., Any], *args: Any) -> Any:
        try:
            call = asyncio.to_thread(func, *args)
            if signal is None:
                return await call
            return await signal.guard(call)
        except Exception as e:
            raise StorageBackendError.from_error(e) from e

    def _object_path(self, key_path: str) -> Path:
        return self.root / key_path

    def _metadata_path(self, key_path: str) -> Path:
        return self.root / METADATA_DIR / f"{key_path}.json"

    def _upload_dir(self, upload_id: str) -> Path:
        if not upload_id or Path(upload_id).name != upload_id or upload_id in (".", ".."):
            raise _no_such_upload(upload_id)
        return self.root / MULTIPART_DIR / upload_id

    def _part_path(self, upload_id: str, part_number: int) -> Path:
        return self._upload_dir(upload_id) / f"{part_number:05d}.part"

    def _load_session(self, upload_id: str, key_path: str) -> Dict[str, Any]:
        session_file = self._upload_dir(upload_id) / "upload.json"
        if not session_file.is_file():
            raise _no_such_upload(upload_id)
        session = json.loads(session_file.read_text())
        if session["key_path"] != key_path:
            raise _no_such_upload(upload_id)
        return session

    def _list_parts(self, upload_id: str) -> List[UploadPart]:
        parts = []
        for part_path in sorted(self._upload_dir(upload_id).glob("*.part")):
            parts.append(UploadPart(
                part_number=int(part_path.stem),
                e_tag=_md5_etag(part_path.read_bytes()),
            ))
        return parts

    def _write_metadata(self, key_path: str, metadata: Dict[str, str]) -> None:
        path = self._metadata_path(key_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(metadata))

    def _load_metadata(self, key_path: str) -> Dict[str, str]:
        path = self._metadata_path(key_path)
        if not path.is_file():
            return {}
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError:
            logger.warning(f"Corrupt metadata sidecar for {key_path}, using defaults")
            return {}

    @staticmethod
    def _last_modified(path: Path) -> datetime:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).replace(microsecond=0)

    def _stat(self, key_path: str) -> ObjectMetadata:
        path = self._object_path(key_path)
        if not path.is_file():
            raise _not_found(key_path)
        stored = self._load_metadata(key_path)
        size = path.stat().st_size
        return ObjectMetadata(
            cache_control=stored.get("cache_control") or DEFAULT_CACHE_CONTROL,
            mimetype=stored.get("mimetype") or DEFAULT_MIMETYPE,
            e_tag=stored.get("e_tag") or "",
            last_modified=self._last_modified(path),
            content_length=size,
            size=size,
            http_status_code=200,
        )

    def _read(self, key_path: str, headers: Optional[ReadHeaders]) -> ObjectResponse:
        metadata = self._stat(key_path)

        if headers and self._not_modified(metadata, headers):
            metadata.http_status_code = 304
            metadata.content_length = 0
            return ObjectResponse(metadata=metadata, body=None, http_status_code=304)

        path = self._object_path(key_path)
        if headers and headers.range:
            first, last = _parse_range(headers.range, metadata.size)
            with open(path, "rb") as f:
                f.seek(first)
                data = f.read(last - first + 1)
            metadata.content_length = len(data)
            metadata.content_range = f"bytes {first}-{last}/{metadata.size}"
            metadata.http_status_code = 206
            return ObjectResponse(metadata=metadata, body=io.BytesIO(data), http_status_code=206)

        return ObjectResponse(metadata=metadata, body=open(path, "rb"), http_status_code=200)

    @staticmethod
    def _not_modified(metadata: ObjectMetadata, headers: ReadHeaders) -> bool:
        if headers.if_none_match:
            return _same_etag(headers.if_none_match, metadata.e_tag)
        if headers.if_modified_since and metadata.last_modified:
            return metadata.last_modified <= parse_http_date(headers.if_modified_since)
        return False

    def _delete(self, key_path: str) -> None:
        self._object_path(key_path).unlink(missing_ok=True)
        self._metadata_path(key_path).unlink(missing_ok=True)

    def _copy(self, source: str, destination: str, conditions: Optional[CopyConditions]) -> CopyResult:
        source_metadata = self._stat(source)

        if conditions:
            modified = source_metadata.last_modified
            if conditions.if_match and not _same_etag(conditions.if_match, source_metadata.e_tag):
                raise _precondition_failed()
            if conditions.if_none_match and _same_etag(conditions.if_none_match, source_metadata.e_tag):
                raise _precondition_failed()
            if conditions.if_modified_since and modified <= parse_http_date(conditions.if_modified_since):
                raise _precondition_failed()
            if conditions.if_unmodified_since and modified > parse_http_date(conditions.if_unmodified_since):
                raise _precondition_failed()

        target = self._object_path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            shutil.copyfile(self._object_path(source), temp)
            os.replace(temp, target)
        finally:
            temp.unlink(missing_ok=True)

        self._write_metadata(destination, {
            "mimetype": source_metadata.mimetype,
            "cache_control": source_metadata.cache_control,
            "e_tag": source_metadata.e_tag,
        })
        return CopyResult(
            http_status_code=200,
            e_tag=source_metadata.e_tag,
            last_modified=self._last_modified(target),
        )
