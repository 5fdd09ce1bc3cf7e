"""
Backend-agnostic object storage contract.

Every physical object store is reached through a `StorageDisk`. Operations
are coroutines that accept an optional `CancellationToken` and raise
`StorageBackendError` for any backend failure, so callers never branch on
backend-specific error shapes.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncIterable, BinaryIO, List, Optional, Union

from storage_jobs.cancellation import CancellationToken

DEFAULT_CACHE_CONTROL = "no-cache"
DEFAULT_MIMETYPE = "application/octet-stream"

SIGNED_URL_EXPIRES_IN = 600

# bytes, a binary file-like object, or an async stream of unknown length
Body = Union[bytes, bytearray, memoryview, BinaryIO, AsyncIterable[bytes]]


def with_optional_version(key: str, version: Optional[str] = None) -> str:
    return f"{key}/{version}" if version else key


def build_key_path(bucket: str, key: str, version: Optional[str] = None, prefix: Optional[str] = None) -> str:
    """Effective storage key: `prefix?/bucket/key[/version]`."""
    object_path = f"{bucket}/{with_optional_version(key, version)}"
    if prefix:
        return f"{prefix}/{object_path}"
    return object_path


def parse_http_date(value: Union[str, datetime]) -> datetime:
    """Accept an HTTP date, an ISO-8601 string or a datetime; always timezone-aware."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ObjectRef:
    """Addressing triple of a stored object."""
    bucket: str
    key: str
    version: Optional[str] = None


@dataclass
class ObjectMetadata:
    cache_control: str = DEFAULT_CACHE_CONTROL
    mimetype: str = DEFAULT_MIMETYPE
    e_tag: str = ""
    last_modified: Optional[datetime] = None
    content_length: int = 0
    size: int = 0
    content_range: Optional[str] = None
    http_status_code: int = 200


@dataclass
class ObjectResponse:
    metadata: ObjectMetadata
    body: Optional[Any]
    http_status_code: int = 200


@dataclass
class ReadHeaders:
    """Conditional and range headers for `read`."""
    if_none_match: Optional[str] = None
    if_modified_since: Optional[Union[str, datetime]] = None
    range: Optional[str] = None


@dataclass
class CopyConditions:
    if_match: Optional[str] = None
    if_none_match: Optional[str] = None
    if_modified_since: Optional[datetime] = None
    if_unmodified_since: Optional[datetime] = None


@dataclass
class CopyResult:
    http_status_code: int = 200
    e_tag: str = ""
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range, as in `bytes=from-to`."""
    from_byte: int
    to_byte: int

    def header(self) -> str:
        return f"bytes={self.from_byte}-{self.to_byte}"


@dataclass(frozen=True)
class UploadPart:
    part_number: int
    e_tag: str


@dataclass
class UploadPartCopyResult:
    e_tag: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass
class CompletedUpload:
    """Descriptor of an object finalized by `complete_multipart_upload`."""
    bucket: str
    key: str
    version: Optional[str] = None
    location: Optional[str] = None
    e_tag: Optional[str] = None
    http_status_code: int = 200


class StorageDisk(ABC):
    """Contract every object store implementation must satisfy."""

    @abstractmethod
    async def read(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        headers: Optional[ReadHeaders] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectResponse:
        """Fetch an object. 304 and 206 are returned, not raised."""

    @abstractmethod
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
        """Store a stream of any length and return the backend's metadata for it."""

    @abstractmethod
    async def delete(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        ...

    @abstractmethod
    async def delete_many(
        self,
        bucket: str,
        prefixes: List[str],
        signal: Optional[CancellationToken] = None,
    ) -> None:
        """Best-effort bulk delete; one aggregate error on failure."""

    @abstractmethod
    async def copy(
        self,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        conditions: Optional[CopyConditions] = None,
        signal: Optional[CancellationToken] = None,
    ) -> CopyResult:
        """Server-side copy honouring conditional-copy semantics."""

    @abstractmethod
    async def metadata(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> ObjectMetadata:
        ...

    @abstractmethod
    async def sign_url(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        """Pre-authorized GET url valid for `SIGNED_URL_EXPIRES_IN` seconds."""

    @abstractmethod
    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str] = None,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
        signal: Optional[CancellationToken] = None,
    ) -> str:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    async def upload_part_copy(
        self,
        upload_id: str,
        part_number: int,
        from_ref: ObjectRef,
        to_ref: ObjectRef,
        byte_range: Optional[ByteRange] = None,
        signal: Optional[CancellationToken] = None,
    ) -> UploadPartCopyResult:
        ...

    @abstractmethod
    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        parts: Optional[List[UploadPart]] = None,
        signal: Optional[CancellationToken] = None,
    ) -> CompletedUpload:
        """Finish an upload; without `parts` the backend's part list is used."""

    @abstractmethod
    async def abort_multipart_upload(
        self,
        bucket: str,
        key: str,
        version: Optional[str],
        upload_id: str,
        signal: Optional[CancellationToken] = None,
    ) -> None:
        ...
