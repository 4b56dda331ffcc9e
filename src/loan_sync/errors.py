"""
Error taxonomy for loan-sync.

Every failure that can reach the HTTP or scheduler boundary is reduced to one
of a closed set of kinds. Engine exceptions carry their kind directly, so the
boundary never needs to inspect concrete exception classes.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Kinds of fatal sync failure, each mapped to an HTTP status."""

    AUTH_FAILED = "AUTH_FAILED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    EXTERNAL_TIMEOUT = "EXTERNAL_TIMEOUT"
    UNKNOWN = "UNKNOWN"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorKind.AUTH_FAILED: 401,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.UPSTREAM_REJECTED: 502,
    ErrorKind.EXTERNAL_TIMEOUT: 504,
    ErrorKind.UNKNOWN: 500,
}


class LoanSyncError(Exception):
    """Base class for errors raised by the engine."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class LibraryApiError(LoanSyncError):
    """The library API answered with an error status or a failure body."""

    def __init__(self, message: str, status_code: int, api_code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.api_code = api_code

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.status_code == 401:
            return ErrorKind.AUTH_FAILED
        if self.status_code >= 500:
            return ErrorKind.UPSTREAM_UNAVAILABLE
        return ErrorKind.UPSTREAM_REJECTED


class AuthError(LibraryApiError):
    """Login was refused, or a call was made without a session."""


class UpstreamUnavailableError(LoanSyncError):
    """The upstream could not be reached after all retries."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ExternalTimeoutError(LoanSyncError):
    """A call was aborted by its own deadline after all retries."""

    kind = ErrorKind.EXTERNAL_TIMEOUT


@dataclass(frozen=True)
class SyncFailure:
    """A classified fatal failure, ready to be rendered at a boundary."""

    kind: ErrorKind
    status_code: int
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind.value, "message": self.message}


def classify_error(error: BaseException) -> SyncFailure:
    """Reduce any exception to a SyncFailure."""
    kind = getattr(error, "kind", ErrorKind.UNKNOWN)
    if not isinstance(kind, ErrorKind):
        kind = ErrorKind.UNKNOWN

    if kind is ErrorKind.EXTERNAL_TIMEOUT:
        message = "External request timed out"
    else:
        message = str(error) or "Unknown error"

    return SyncFailure(kind=kind, status_code=kind.http_status, message=message)
