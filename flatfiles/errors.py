"""
Error taxonomy for the flat-file backfill pipeline.

Every failure a date-unit can hit is expressed as one of these types so the
orchestrator can record a precise outcome, and so the retry decision is a pure
function of ErrorKind instead of exception sniffing at call sites.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of object storage failures."""

    NOT_FOUND = "not_found"    # Expected on market holidays, never retried
    TRANSIENT = "transient"    # Network, throttling, 5xx
    FATAL = "fatal"            # Credentials, permissions, malformed requests


HOLIDAY_REASON = "File not found (likely market holiday)"


class FlatFileBackfillError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(FlatFileBackfillError):
    """Invalid or missing configuration; raised before any job row exists."""


class ConnectivityError(FlatFileBackfillError):
    """Pre-flight probe of an external endpoint failed."""


class ReferenceApiError(FlatFileBackfillError):
    """Reference data API request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ReferenceSchemaError(ReferenceApiError):
    """Reference API payload does not match the expected wire shape."""


class FlatFileError(FlatFileBackfillError):
    """Object storage failure carrying its ErrorKind."""

    def __init__(self, message: str, kind: ErrorKind, key: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.kind = kind
        self.key = key
        self.attempts = attempts


class ObjectNotFoundError(FlatFileError):
    """Requested flat file does not exist (weekend/holiday or not yet published)."""

    def __init__(self, key: str):
        super().__init__(f"File not found: {key}", ErrorKind.NOT_FOUND, key=key, attempts=1)


class RetriesExhaustedError(FlatFileError):
    """Transient failures persisted through every allowed attempt."""

    def __init__(self, key: str, attempts: int, last_error: Exception):
        super().__init__(
            f"Download failed after {attempts} attempts for {key}: {last_error}",
            ErrorKind.TRANSIENT,
            key=key,
            attempts=attempts,
        )
        self.last_error = last_error


class EmptyPayloadError(FlatFileBackfillError):
    """A downloaded file produced zero valid records."""


class BulkLoadError(FlatFileBackfillError):
    """Staging or merge failed; the date's transaction was rolled back."""


def should_retry(kind: ErrorKind, attempt: int, max_attempts: int) -> bool:
    """
    Decide whether a failed download attempt is retried.

    Args:
        kind: Classification of the failure
        attempt: 1-based number of the attempt that just failed
        max_attempts: Attempt budget

    Returns:
        True if another attempt should be made
    """
    return kind is ErrorKind.TRANSIENT and attempt < max_attempts


def backoff_delay(base_delay: float, attempt: int) -> float:
    """
    Exponential backoff delay after a failed attempt.

    Args:
        base_delay: Base delay in seconds
        attempt: 0-based index of the attempt that just failed

    Returns:
        Seconds to wait before the next attempt (base × 2^attempt)
    """
    return base_delay * (2 ** attempt)


def describe_failure(error: BaseException, limit: int = 500) -> str:
    """Human-readable, length-limited reason recorded on a failed date."""
    if isinstance(error, ObjectNotFoundError):
        return HOLIDAY_REASON
    message = str(error) or error.__class__.__name__
    return message[:limit]
