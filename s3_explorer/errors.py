from __future__ import annotations
"""Exception types shared by the store facade, the mapper and transfer jobs."""
from enum import Enum
from typing import Optional

from boto3.exceptions import Boto3Error, RetriesExceededError
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    ReadTimeoutError,
)
from s3transfer.exceptions import (
    RetriesExceededError as TransferRetriesExceededError,
    S3DownloadFailedError,
    S3UploadFailedError,
)


class StoreErrorCause(Enum):
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNKNOWN = "unknown"


_NOT_FOUND_CODES = {"404", "NotFound", "NoSuchKey", "NoSuchBucket", "NoSuchUpload"}
_ACCESS_DENIED_CODES = {
    "403",
    "AccessDenied",
    "AllAccessDisabled",
    "Forbidden",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}
_NETWORK_CODES = {"ServiceUnavailable", "SlowDown", "503"}

_NETWORK_EXCEPTIONS = (
    BotoConnectionError,
    HTTPClientError,
    RetriesExceededError,
    TransferRetriesExceededError,
)

# Exceptions the boto3 client and its managed transfers raise for store failures.
STORE_EXCEPTIONS = (
    ClientError,
    BotoCoreError,
    Boto3Error,
    TransferRetriesExceededError,
    S3DownloadFailedError,
    S3UploadFailedError,
)


class StoreError(RuntimeError):
    """Raised when an object store operation fails."""

    def __init__(
        self,
        cause: StoreErrorCause,
        operation: str,
        message: str = "",
        *,
        key: Optional[str] = None,
    ) -> None:
        self.cause = cause
        self.operation = operation
        self.message = message
        self.key = key
        super().__init__(str(self))

    def __str__(self) -> str:
        target = f" for {self.key}" if self.key else ""
        detail = f": {self.message}" if self.message else ""
        return f"{self.operation} failed{target} ({self.cause.value}){detail}"


class LocalIOError(RuntimeError):
    """Raised when a local filesystem operation fails during a transfer."""

    def __init__(self, path: str, error: OSError) -> None:
        self.path = path
        self.error = error
        super().__init__(f"{path}: {error.strerror or error}")


class TransferCancelledError(RuntimeError):
    """Raised when an upload or download is cancelled by the caller."""


class NotConnectedError(RuntimeError):
    """Raised when an S3 operation is attempted before connecting."""


def classify_client_error(exc: ClientError) -> StoreErrorCause:
    error = exc.response.get("Error", {}) if exc.response else {}
    code = str(error.get("Code", ""))
    if not code:
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") if exc.response else None
        code = str(status or "")
    return cause_for_code(code)


def cause_for_code(code: str) -> StoreErrorCause:
    if code in _NOT_FOUND_CODES:
        return StoreErrorCause.NOT_FOUND
    if code in _ACCESS_DENIED_CODES:
        return StoreErrorCause.ACCESS_DENIED
    if code in _TIMEOUT_CODES:
        return StoreErrorCause.TIMEOUT
    if code in _NETWORK_CODES:
        return StoreErrorCause.NETWORK
    return StoreErrorCause.UNKNOWN


def translate_error(exc: Exception, operation: str, *, key: Optional[str] = None) -> StoreError:
    """Map a botocore exception onto :class:`StoreError`."""

    if isinstance(exc, StoreError):
        return exc
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {}) if exc.response else {}
        message = error.get("Message") or str(exc)
        return StoreError(classify_client_error(exc), operation, message, key=key)
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return StoreError(StoreErrorCause.TIMEOUT, operation, str(exc), key=key)
    if isinstance(exc, _NETWORK_EXCEPTIONS):
        return StoreError(StoreErrorCause.NETWORK, operation, str(exc), key=key)
    return StoreError(StoreErrorCause.UNKNOWN, operation, str(exc), key=key)
