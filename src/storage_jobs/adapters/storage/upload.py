"""
Streaming upload to S3 that picks single-shot or multipart transfer.

The body is cut into `part_size` chunks. A body that fits in one chunk goes
out as a single PutObject; anything longer becomes a multipart upload whose
parts are sent with at most `queue_size` requests in flight. A failed or
cancelled multipart upload is aborted so no partial object is left behind.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, List, Optional

from storage_jobs.adapters.storage.client import send
from storage_jobs.adapters.storage.disk import Body, UploadPart
from storage_jobs.cancellation import CancellationToken
from storage_jobs.errors import Aborted, InvalidUploadSession, StorageBackendError

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 5 * 1024 * 1024
DEFAULT_QUEUE_SIZE = 4

_END_OF_STREAM = object()


async def _next_chunk(stream: AsyncIterator[bytes]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


async def _guarded(signal: Optional[CancellationToken], awaitable: Awaitable[Any]) -> Any:
    if signal is None:
        return await awaitable
    return await signal.guard(awaitable)


async def iter_chunks(
    body: Body,
    chunk_size: int,
    signal: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    """Yield `body` in `chunk_size` pieces; only the last one may be shorter."""
    if isinstance(body, (bytes, bytearray, memoryview)):
        data = bytes(body)
        for offset in range(0, len(data), chunk_size):
            if signal is not None:
                signal.raise_if_cancelled()
            yield data[offset:offset + chunk_size]
        return

    if hasattr(body, "read"):
        while True:
            if signal is not None:
                signal.raise_if_cancelled()
            buffer = bytearray()
            while len(buffer) < chunk_size:
                data = await _guarded(signal, asyncio.to_thread(body.read, chunk_size - len(buffer)))
                if not data:
                    break
                buffer.extend(data)
            if not buffer:
                return
            yield bytes(buffer)
            if len(buffer) < chunk_size:
                return

    buffer = bytearray()
    stream = body.__aiter__()
    while True:
        # a stalled producer must not hold up cancellation
        data = await _guarded(signal, _next_chunk(stream))
        if data is _END_OF_STREAM:
            break
        buffer.extend(data)
        while len(buffer) >= chunk_size:
            yield bytes(buffer[:chunk_size])
            del buffer[:chunk_size]
    if signal is not None:
        signal.raise_if_cancelled()
    if buffer:
        yield bytes(buffer)


class ParallelUpload:
    """One-shot uploader for a single object; call `done()` once."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        key: str,
        body: Body,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
        part_size: int = DEFAULT_PART_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        signal: Optional[CancellationToken] = None,
    ):
        self.client = client
        self.bucket = bucket
        self.key = key
        self.body = body
        self.content_type = content_type
        self.cache_control = cache_control
        self.part_size = part_size
        self.queue_size = queue_size
        self.signal = signal
        self.upload_id: Optional[str] = None

    async def done(self) -> dict:
        chunks = iter_chunks(self.body, self.part_size, self.signal)
        try:
            first = await anext(chunks, None)
            second = await anext(chunks, None)
            if second is None:
                return await self._put_single(first or b"")
            return await self._upload_multipart(first, second, chunks)
        finally:
            await chunks.aclose()

    def _object_params(self) -> dict:
        params = {"Bucket": self.bucket, "Key": self.key}
        if self.content_type:
            params["ContentType"] = self.content_type
        if self.cache_control:
            params["CacheControl"] = self.cache_control
        return params

    async def _put_single(self, data: bytes) -> dict:
        params = {**self._object_params(), "Body": data, "ContentLength": len(data)}
        if self.signal is None:
            return await send(self.client, "put_object", **params)

        put = asyncio.ensure_future(asyncio.to_thread(self.client.put_object, **params))
        try:
            return await self.signal.guard(asyncio.shield(put))
        except Aborted:
            # the request is already on the wire; let it land, then remove it
            await self._discard_settled_put(put)
            raise

    async def _discard_settled_put(self, put: "asyncio.Future[dict]") -> None:
        try:
            await put
        except Exception:
            return
        try:
            await send(self.client, "delete_object", Bucket=self.bucket, Key=self.key)
        except StorageBackendError as e:
            logger.error(f"Failed to remove cancelled upload {self.key}: {e.message}")

    async def _upload_multipart(self, first: bytes, second: bytes, rest: AsyncIterator[bytes]) -> dict:
        # unguarded: the upload id has to be known to abort it
        response = await send(self.client, "create_multipart_upload", **self._object_params())
        self.upload_id = response.get("UploadId")
        if not self.upload_id:
            raise InvalidUploadSession()

        parts: List[UploadPart] = []
        tasks: List[asyncio.Task] = []
        semaphore = asyncio.Semaphore(self.queue_size)

        async def upload(part_number: int, chunk: bytes) -> None:
            try:
                resp = await send(
                    self.client,
                    "upload_part",
                    self.signal,
                    Bucket=self.bucket,
                    Key=self.key,
                    UploadId=self.upload_id,
                    PartNumber=part_number,
                    Body=chunk,
                    ContentLength=len(chunk),
                )
                parts.append(UploadPart(part_number=part_number, e_tag=resp["ETag"]))
            finally:
                semaphore.release()

        async def start_part(chunk: bytes) -> None:
            await semaphore.acquire()
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    semaphore.release()
                    raise task.exception()
            tasks.append(asyncio.create_task(upload(len(tasks) + 1, chunk)))

        try:
            if self.signal is not None:
                self.signal.raise_if_cancelled()
            await start_part(first)
            await start_part(second)
            async for chunk in rest:
                await start_part(chunk)
            await asyncio.gather(*tasks)

            parts.sort(key=lambda part: part.part_number)
            logger.debug(f"Completing multipart upload of {self.key} with {len(parts)} parts")
            return await send(
                self.client,
                "complete_multipart_upload",
                self.signal,
                Bucket=self.bucket,
                Key=self.key,
                UploadId=self.upload_id,
                MultipartUpload={
                    "Parts": [{"PartNumber": part.part_number, "ETag": part.e_tag} for part in parts]
                },
            )
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._abort()
            raise

    async def _abort(self) -> None:
        try:
            await send(
                self.client,
                "abort_multipart_upload",
                Bucket=self.bucket,
                Key=self.key,
                UploadId=self.upload_id,
            )
            logger.info(f"Aborted multipart upload {self.upload_id} for {self.key}")
        except StorageBackendError as e:
            logger.error(f"Failed to abort multipart upload {self.upload_id}: {e.message}")
