"""
Error types for the DocStore SDK.

This module defines all exception types raised by the SDK:
- DocStoreError: Base exception
- ValidationError: Malformed query, path or builder options
- EncodeError / DecodeError: Value codec failures (path-qualified)
- PreconditionFailedError: Server-side precondition rejected a write
- ConflictError: Transaction aborted by a concurrent write
- TransientTransportError / PermanentTransportError: Classified RPC failures
- StreamBrokenError: A streaming read or change feed dropped mid-stream
- ResumeTokenExpiredError: A change feed cannot resume from its token

Invariants:
    - All errors inherit from DocStoreError
    - Transport failures are classified exactly once, in error_from_status()
    - Only errors with retryable=True are retried by the SDK

How to change safely:
    - New status codes must be added to TRANSIENT_STATUS_CODES or mapped
      explicitly in error_from_status()
    - Keep error codes stable; callers switch on them
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, List, Optional


class StatusCode(IntEnum):
    """RPC status codes as carried on the wire."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


TRANSIENT_STATUS_CODES = frozenset(
    {
        StatusCode.UNAVAILABLE,
        StatusCode.DEADLINE_EXCEEDED,
        StatusCode.RESOURCE_EXHAUSTED,
        StatusCode.ABORTED,
    }
)


class DocStoreError(Exception):
    """Base exception for all DocStore SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether the SDK may retry the failed operation
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCSTORE_ERROR"
        self.details = details or {}


class ConnectionError(DocStoreError):
    """Failed to connect to the document database.

    Raised when:
    - Server is unreachable
    - Channel setup fails
    """

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"address": address},
        )
        self.address = address


class ValidationError(DocStoreError):
    """Input rejected before anything was sent.

    Raised when:
    - A field path or document path is malformed
    - Query builder options conflict (e.g. cursor without order)
    - A write operation is missing required parts
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class CodecError(DocStoreError):
    """Value conversion failed at a specific location in the value tree.

    Attributes:
        path: Location of the failure, e.g. "items[2].name"
    """

    def __init__(self, message: str, path: str = "", code: str = "CODEC_ERROR") -> None:
        location = path or "<root>"
        super().__init__(
            f"{message} (at {location})",
            code=code,
            details={"path": path},
        )
        self.reason = message
        self.path = path


class EncodeError(CodecError):
    """A native value could not be encoded into the wire value model."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message, path, code="ENCODE_ERROR")


class DecodeError(CodecError):
    """A wire value could not be decoded into the requested native type."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message, path, code="DECODE_ERROR")


class PreconditionFailedError(DocStoreError):
    """A write precondition was rejected by the server.

    Raised when:
    - Create targets an existing document
    - exists=True or update_time precondition does not hold
    """

    def __init__(
        self,
        message: str,
        document_path: Optional[str] = None,
        index: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="PRECONDITION_FAILED",
            details={"document_path": document_path, "index": index},
        )
        self.document_path = document_path
        self.index = index


class ConflictError(DocStoreError):
    """Transaction commit aborted by a concurrent conflicting write.

    Retryable at the transaction level: the whole transaction body must be
    re-run, not just the commit.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        transaction_id: Optional[bytes] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"transaction_id": transaction_id.hex() if transaction_id else None},
        )
        self.transaction_id = transaction_id


class TransportError(DocStoreError):
    """An RPC failed with a status code.

    Attributes:
        status: The wire status code
    """

    def __init__(
        self,
        message: str,
        status: StatusCode,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = {"status": status.name}
        merged.update(details or {})
        super().__init__(message, code=status.name, details=merged)
        self.status = status


class TransientTransportError(TransportError):
    """Temporary transport failure; safe operations are retried locally."""

    retryable = True


class PermanentTransportError(TransportError):
    """Transport failure that will not succeed on retry."""


class NotFoundError(PermanentTransportError):
    """The addressed resource does not exist."""

    def __init__(self, message: str, resource: Optional[str] = None) -> None:
        super().__init__(message, StatusCode.NOT_FOUND, details={"resource": resource})
        self.resource = resource


class StreamBrokenError(DocStoreError):
    """A server stream terminated before it was complete.

    Streaming reads surface it to the caller; change feeds reconnect from the
    last persisted resume token.
    """

    retryable = True

    def __init__(self, message: str, status: Optional[StatusCode] = None) -> None:
        super().__init__(
            message,
            code="STREAM_BROKEN",
            details={"status": status.name if status is not None else None},
        )
        self.status = status


class ResumeTokenExpiredError(DocStoreError):
    """The server can no longer resume a change feed from the given token."""

    def __init__(self, message: str, target_id: Optional[int] = None) -> None:
        super().__init__(
            message,
            code="RESUME_TOKEN_EXPIRED",
            details={"target_id": target_id},
        )
        self.target_id = target_id


class CacheError(DocStoreError):
    """Local cache backend failure."""

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(message, code="CACHE_ERROR", details={"backend": backend})
        self.backend = backend


class ListenerStateError(DocStoreError):
    """Illegal state transition requested on a listener."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal listener transition {current} -> {requested}",
            code="LISTENER_STATE_ERROR",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


def is_transient_status(status: StatusCode) -> bool:
    """Whether a status code is classified as transient."""
    return status in TRANSIENT_STATUS_CODES


def error_from_status(
    status: StatusCode | int,
    message: str = "",
    *,
    resource: Optional[str] = None,
    index: Optional[int] = None,
) -> DocStoreError:
    """Classify an RPC status into the SDK error taxonomy.

    Args:
        status: Wire status code
        message: Server-provided message
        resource: Document path the status refers to, if known
        index: Batch item index the status refers to, if any

    Returns:
        The classified error (not raised)
    """
    status = StatusCode(status)
    text = message or status.name

    if status in (StatusCode.FAILED_PRECONDITION, StatusCode.ALREADY_EXISTS):
        return PreconditionFailedError(text, document_path=resource, index=index)
    if status == StatusCode.NOT_FOUND:
        return NotFoundError(text, resource=resource)
    if status in TRANSIENT_STATUS_CODES:
        return TransientTransportError(
            text, status, details={"resource": resource, "index": index}
        )
    return PermanentTransportError(text, status, details={"resource": resource, "index": index})
