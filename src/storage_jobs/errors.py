"""Error kinds raised across the job pipeline and the storage adapters."""
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class StorageJobsError(Exception):
    """Base class for every error this package raises on purpose."""

    code = "InternalError"
    http_status_code = 500

    def __init__(self, message: str = "", code: Optional[str] = None, http_status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code
        if http_status_code is not None:
            self.http_status_code = http_status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "statusCode": self.http_status_code,
            "message": self.message,
        }


class Aborted(StorageJobsError):
    """The caller's cancellation token fired before or during an operation."""

    code = "AbortError"
    http_status_code = 499


class ConfigurationError(StorageJobsError):
    """The process configuration cannot support the requested operation."""

    code = "ConfigurationError"


class QueueUninitialized(StorageJobsError):
    """A queue operation was attempted before the dispatcher was started."""

    code = "QueueNotInitialized"

    def __init__(self, message: str = "job queue not initialised"):
        super().__init__(message)


class InvalidUploadSession(StorageJobsError):
    """The backend did not hand back an upload id for a multipart upload."""

    code = "InvalidUploadId"
    http_status_code = 400

    def __init__(self, message: str = "Invalid upload id"):
        super().__init__(message)


class HandlerError(StorageJobsError):
    """Failure raised by task-specific business logic."""

    code = "HandlerError"


class StorageBackendError(StorageJobsError):
    """
    Normalized shape for any backend or storage-transport failure.

    Adapters never let botocore, OS or transport errors escape; they are
    converted with `from_error` at the adapter boundary.
    """

    def __init__(
        self,
        code: str,
        http_status_code: int,
        message: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, code=code, http_status_code=http_status_code)
        self.original_error = original_error

    @property
    def aborted(self) -> bool:
        return self.code == Aborted.code

    @classmethod
    def from_error(cls, error: BaseException) -> "StorageBackendError":
        if isinstance(error, StorageBackendError):
            return error

        if isinstance(error, Aborted):
            return cls(Aborted.code, Aborted.http_status_code, error.message, error)

        if isinstance(error, ClientError):
            response = error.response or {}
            details = response.get("Error", {})
            status = response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 500
            code = details.get("Code") or "UnknownError"
            message = details.get("Message") or str(error)
            return cls(code, int(status), message, error)

        if isinstance(error, StorageJobsError):
            return cls(error.code, error.http_status_code, error.message, error)

        if isinstance(error, FileNotFoundError):
            return cls("NoSuchKey", 404, "The specified key does not exist.", error)

        if isinstance(error, BotoCoreError):
            return cls(type(error).__name__, 500, str(error), error)

        logger.debug(f"Normalizing unexpected storage error: {error!r}")
        return cls("InternalError", 500, "Internal server error", error)
