"""
Standardized error classification for natspack tasks.

Every failure a task raises is either a ``NatsToolError`` subclass or is
mapped onto an ``ErrorInfo`` by ``classify_nats_error`` so that playbook
case blocks can route on stable fields instead of message strings:

    case:
      - when: "{{ event.payload.error.kind == 'connection' }}"
        then:
          retry:
            max_attempts: 3

      - when: "{{ event.payload.error.kind == 'schema' }}"
        then:
          jump:
            action: fix_input
"""

import asyncio
from enum import Enum
from typing import Any, Optional

import nats.errors
import nats.js.errors
from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Standardized error categories for case block matching."""

    # Network/connectivity errors
    CONNECTION = "connection"       # Unreachable server, auth rejected
    TIMEOUT = "timeout"             # Client-side timeout
    AUTH = "auth"                   # Credentials refused

    # JetStream errors
    SUBSCRIPTION = "subscription"   # Stream or consumer not provisioned
    NOT_FOUND = "not_found"         # Bucket/stream/key/source missing

    # Data/validation errors
    SCHEMA = "schema"               # Malformed task input
    PARSE = "parse"                 # Payload encode/decode failure

    # Generic
    UNKNOWN = "unknown"             # Unclassified error


class ErrorInfo(BaseModel):
    """
    Standardized error object for event payloads.

    Enables stable case conditions:
    - error.kind == 'connection'
    - error.retryable == true
    - error.code == 'NATS_NO_SERVERS'
    """

    kind: ErrorKind = Field(
        default=ErrorKind.UNKNOWN,
        description="Error category for case matching"
    )
    retryable: bool = Field(
        default=False,
        description="Whether this error is worth retrying"
    )
    code: str = Field(
        default="UNKNOWN",
        description="Tool-specific error code (NATS_TIMEOUT, NATS_NOT_A_MAP, etc.)"
    )
    message: str = Field(
        default="Unknown error",
        description="Human-readable error message"
    )
    source: str = Field(
        default="nats",
        description="Tool kind that produced this error"
    )
    operation: Optional[str] = Field(
        None, description="Task operation that was running"
    )
    exception_type: Optional[str] = Field(
        None, description="Python exception class name"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Optional extra context (offending value shape, subject, etc.)"
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for event payload and template access."""
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
            "source": self.source,
        }
        if self.operation is not None:
            d["operation"] = self.operation
        if self.exception_type is not None:
            d["exception_type"] = self.exception_type
        if self.details:
            d["details"] = self.details
        return d


class NatsToolError(Exception):
    """Base class for every error raised by natspack tasks."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    code: str = "NATS_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_error_info(self, operation: Optional[str] = None) -> ErrorInfo:
        return ErrorInfo(
            kind=self.kind,
            retryable=self.retryable,
            code=self.code,
            message=self.message,
            operation=operation,
            exception_type=type(self).__name__,
            details=self.details,
        )


class NatsConnectionError(NatsToolError):
    """The broker cannot be reached or refused the credentials."""

    kind = ErrorKind.CONNECTION
    code = "NATS_CONNECTION"


class SubscriptionError(NatsToolError):
    """The stream or consumer backing a subject is not provisioned correctly."""

    kind = ErrorKind.SUBSCRIPTION
    code = "NATS_SUBSCRIPTION"


class MessageSourceError(NatsToolError, ValueError):
    """Malformed ``from`` input. Never retryable."""

    kind = ErrorKind.SCHEMA
    code = "NATS_MESSAGE_SOURCE"


class InvalidInputShape(MessageSourceError):
    code = "NATS_INVALID_INPUT_SHAPE"


class EmptyInput(MessageSourceError):
    code = "NATS_EMPTY_INPUT"


class NotAMap(MessageSourceError):
    code = "NATS_NOT_A_MAP"


class SerializationError(NatsToolError):
    """A payload could not be encoded or decoded."""

    kind = ErrorKind.PARSE
    code = "NATS_SERIALIZATION"


def shape_of(value: Any) -> str:
    """Short type description used in error messages, never the value itself."""
    if value is None:
        return "null"
    if isinstance(value, (list, tuple)):
        return f"{type(value).__name__}[{len(value)}]"
    if isinstance(value, dict):
        return f"map[{len(value)}]"
    return type(value).__name__


def classify_nats_error(error: Exception, operation: Optional[str] = None) -> ErrorInfo:
    """Classify any exception raised while running a NATS task."""
    if isinstance(error, NatsToolError):
        return error.to_error_info(operation)

    message = str(error) or type(error).__name__
    exception_type = type(error).__name__

    if isinstance(error, nats.js.errors.KeyNotFoundError):
        return ErrorInfo(
            kind=ErrorKind.NOT_FOUND,
            retryable=False,
            code="NATS_KEY_NOT_FOUND",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, (nats.js.errors.NotFoundError, nats.js.errors.BucketNotFoundError)):
        return ErrorInfo(
            kind=ErrorKind.NOT_FOUND,
            retryable=False,
            code="NATS_NOT_FOUND",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, FileNotFoundError):
        return ErrorInfo(
            kind=ErrorKind.NOT_FOUND,
            retryable=False,
            code="NATS_SOURCE_NOT_FOUND",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, nats.errors.NoRespondersError):
        return ErrorInfo(
            kind=ErrorKind.NOT_FOUND,
            retryable=True,
            code="NATS_NO_RESPONDERS",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, nats.errors.NoServersError):
        return ErrorInfo(
            kind=ErrorKind.CONNECTION,
            retryable=True,
            code="NATS_NO_SERVERS",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, nats.errors.AuthorizationError):
        return ErrorInfo(
            kind=ErrorKind.AUTH,
            retryable=False,
            code="NATS_AUTHORIZATION",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, (nats.errors.TimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorInfo(
            kind=ErrorKind.TIMEOUT,
            retryable=True,
            code="NATS_TIMEOUT",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, (nats.errors.ConnectionClosedError, ConnectionError, OSError)):
        return ErrorInfo(
            kind=ErrorKind.CONNECTION,
            retryable=True,
            code="NATS_CONNECTION",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )
    if isinstance(error, (ValueError, TypeError)):
        return ErrorInfo(
            kind=ErrorKind.SCHEMA,
            retryable=False,
            code="NATS_INVALID_CONFIG",
            message=message,
            operation=operation,
            exception_type=exception_type,
        )

    return ErrorInfo(
        kind=ErrorKind.UNKNOWN,
        retryable=False,
        code="UNKNOWN",
        message=message,
        operation=operation,
        exception_type=exception_type,
    )
