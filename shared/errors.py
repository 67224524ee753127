"""
Shared error handling for the gateway.

Every client-visible failure is a ``GatewayError`` carrying one of the
canonical error kinds below. The HTTP status is a property of the kind,
except for ``PartialFailure`` whose status depends on whether any backend
produced data.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Canonical error kinds surfaced to clients."""
    MISSING_VERSION = "MissingVersion"
    UNSUPPORTED_VERSION = "UnsupportedVersion"
    UNKNOWN_RESOURCE = "UnknownResource"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    INVALID_REQUEST = "InvalidRequest"
    UNREACHABLE = "Unreachable"
    TIMEOUT = "Timeout"
    CIRCUIT_OPEN = "CircuitOpen"
    PARTIAL_FAILURE = "PartialFailure"
    ALL_BACKENDS_FAILED = "AllBackendsFailed"
    UPSTREAM_REJECTED = "UpstreamRejected"
    MALFORMED_UPSTREAM_RESPONSE = "MalformedUpstreamResponse"
    UNAUTHORIZED = "Unauthorized"
    FORBIDDEN = "Forbidden"
    CONFIGURATION_ERROR = "ConfigurationError"
    INTERNAL_ERROR = "InternalError"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.MISSING_VERSION: 400,
    ErrorKind.UNSUPPORTED_VERSION: 400,
    ErrorKind.UNKNOWN_RESOURCE: 404,
    ErrorKind.METHOD_NOT_ALLOWED: 405,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNREACHABLE: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.PARTIAL_FAILURE: 502,
    ErrorKind.ALL_BACKENDS_FAILED: 502,
    ErrorKind.UPSTREAM_REJECTED: 502,
    ErrorKind.MALFORMED_UPSTREAM_RESPONSE: 502,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFIGURATION_ERROR: 500,
    ErrorKind.INTERNAL_ERROR: 500,
}

# Backend faults absorbed by the reliability layer's bounded retry.
RETRIABLE_KINDS = frozenset({ErrorKind.UNREACHABLE, ErrorKind.TIMEOUT})


class ErrorBody(BaseModel):
    """Inner error object."""

    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: ErrorBody
    data: Optional[Any] = None

    def to_content(self) -> Dict[str, Any]:
        """Serialise, dropping unset optional members."""
        return self.model_dump(exclude_none=True)


class GatewayError(Exception):
    """Base exception for gateway failures."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def headers(self) -> Dict[str, str]:
        """HTTP headers that accompany this error; errors are never cached."""
        return {"Cache-Control": "no-store"}

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=ErrorBody(
                kind=self.kind.value,
                message=self.message,
                details=self.details or None,
            )
        )


class MissingVersionError(GatewayError):
    kind = ErrorKind.MISSING_VERSION

    def __init__(self, message: str = "Request does not carry an API version", details=None):
        super().__init__(message, details)


class UnsupportedVersionError(GatewayError):
    kind = ErrorKind.UNSUPPORTED_VERSION

    def __init__(self, version: str, supported: Iterable[str] = (), resource: Optional[str] = None):
        supported = sorted(supported)
        target = f" for resource '{resource}'" if resource else ""
        super().__init__(
            f"API version '{version}' is not supported{target}",
            {"requested": version, "supported": supported},
        )


class UnknownResourceError(GatewayError):
    kind = ErrorKind.UNKNOWN_RESOURCE

    def __init__(self, resource: str):
        super().__init__(f"Unknown resource '{resource}'", {"resource": resource})


class MethodNotAllowedError(GatewayError):
    kind = ErrorKind.METHOD_NOT_ALLOWED

    def __init__(self, method: str, resource: str, allowed: Iterable[str]):
        self.allowed = sorted(allowed)
        super().__init__(
            f"Method {method} is not allowed on '{resource}'",
            {"method": method, "allowed": self.allowed},
        )

    def headers(self) -> Dict[str, str]:
        return {**super().headers(), "Allow": ", ".join(self.allowed)}


class InvalidRequestError(GatewayError):
    kind = ErrorKind.INVALID_REQUEST


class UnreachableError(GatewayError):
    kind = ErrorKind.UNREACHABLE


class BackendTimeoutError(GatewayError):
    kind = ErrorKind.TIMEOUT


class CircuitOpenError(GatewayError):
    kind = ErrorKind.CIRCUIT_OPEN


class UpstreamRejectedError(GatewayError):
    kind = ErrorKind.UPSTREAM_REJECTED


class MalformedUpstreamResponseError(GatewayError):
    kind = ErrorKind.MALFORMED_UPSTREAM_RESPONSE


class PartialFailureError(GatewayError):
    """A required adapter failed during fan-out-merge."""

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(self, failed_adapters: List[str], reasons: Dict[str, str], partial: Any = None,
                 succeeded: bool = False):
        self.failed_adapters = list(failed_adapters)
        self.partial = partial
        self.succeeded = succeeded
        super().__init__(
            f"Required backends failed: {', '.join(self.failed_adapters)}",
            {"failedAdapters": self.failed_adapters, "reasons": reasons},
        )

    @property
    def status_code(self) -> int:
        # Multi-status when some backends did answer.
        return 207 if self.succeeded else 502

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        if self.succeeded:
            response.data = self.partial
        return response


class AllBackendsFailedError(GatewayError):
    kind = ErrorKind.ALL_BACKENDS_FAILED

    def __init__(self, reasons: Dict[str, str]):
        super().__init__(
            "Every backend failed to answer",
            {"failedAdapters": list(reasons), "reasons": reasons},
        )


class UnauthorizedError(GatewayError):
    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", details=None):
        super().__init__(message, details)

    def headers(self) -> Dict[str, str]:
        return {**super().headers(), "WWW-Authenticate": "Bearer"}


class ForbiddenError(GatewayError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Access denied", details=None):
        super().__init__(message, details)


class ConfigurationError(GatewayError):
    """Invalid gateway topology; fatal at startup."""

    kind = ErrorKind.CONFIGURATION_ERROR


ERROR_CLASS_BY_KIND = {
    ErrorKind.UNREACHABLE: UnreachableError,
    ErrorKind.TIMEOUT: BackendTimeoutError,
    ErrorKind.CIRCUIT_OPEN: CircuitOpenError,
    ErrorKind.UPSTREAM_REJECTED: UpstreamRejectedError,
    ErrorKind.MALFORMED_UPSTREAM_RESPONSE: MalformedUpstreamResponseError,
}


def error_from_kind(kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None) -> GatewayError:
    """Build the exception for a backend failure kind."""
    error_cls = ERROR_CLASS_BY_KIND.get(kind, GatewayError)
    return error_cls(message, details)
