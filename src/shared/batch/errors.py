"""Failure taxonomy for the batch engine."""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Optional

_RETRY_AFTER_PATTERN = re.compile(r"retry[ -]after:?\s*([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)
_MAX_REASON_CHARS = 160


class FailureKind(str, Enum):
    """How a failed attempt is treated by the engine."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    RETRIES_EXHAUSTED = "retries_exhausted"


class BatchEngineError(RuntimeError):
    """Base class for errors raised by the batch engine."""


class UpstreamError(BatchEngineError):
    """Raised by units of work when the upstream API reports a failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class RateLimitedError(UpstreamError):
    """Upstream rejected the request with a 429-class response."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
    ) -> None:
        super().__init__(message, status_code=status_code, retryable=True)
        self.retry_after = retry_after


class AttemptTimeoutError(BatchEngineError):
    """A single attempt exceeded its hard timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Request timed out after {timeout_seconds:.1f}s")
        self.timeout_seconds = timeout_seconds


class CircuitOpenError(BatchEngineError):
    """The circuit breaker is shedding load."""

    def __init__(self, next_retry_at: float, retry_in: float) -> None:
        super().__init__(f"Circuit open; next attempt allowed in {retry_in:.1f}s")
        self.next_retry_at = next_retry_at
        self.retry_in = retry_in


class RetriesExhaustedError(BatchEngineError):
    """All attempts for one unit of work failed."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(
            f"Failed after {attempts} attempt(s): {short_reason(last_error)}"
        )
        self.last_error = last_error
        self.attempts = attempts


class BatchInProgressError(BatchEngineError):
    """A batch is already running on this scheduler."""


class ProfileChangeRejected(ValueError):
    """Quality profile changes are not accepted while processing."""


def parse_retry_after(text: Optional[str]) -> Optional[float]:
    """Extract an advertised retry-after value (seconds) from a message or header."""

    if text is None:
        return None
    value = str(text).strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        match = _RETRY_AFTER_PATTERN.search(value)
        if not match:
            return None
        seconds = float(match.group(1))
    return seconds if seconds >= 0 else None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception raised while running work onto a ``FailureKind``."""

    if isinstance(exc, asyncio.CancelledError):
        return FailureKind.CANCELLED
    if isinstance(exc, CircuitOpenError):
        return FailureKind.CIRCUIT_OPEN
    if isinstance(exc, RetriesExhaustedError):
        return FailureKind.RETRIES_EXHAUSTED
    if isinstance(exc, RateLimitedError):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, UpstreamError):
        if not exc.retryable:
            return FailureKind.PERMANENT
        if exc.status_code == 429 or parse_retry_after(exc.message) is not None:
            return FailureKind.RATE_LIMITED
    return FailureKind.TRANSIENT


def short_reason(exc: BaseException) -> str:
    """Return a short, human readable reason for a failure."""

    if isinstance(exc, asyncio.CancelledError):
        return "cancelled"
    if isinstance(exc, CircuitOpenError):
        return "circuit open"
    if isinstance(exc, RetriesExhaustedError):
        return str(exc)
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else ""
    if isinstance(exc, (AttemptTimeoutError, asyncio.TimeoutError)) and not message:
        message = "timeout"
    if not message:
        message = type(exc).__name__
    if len(message) > _MAX_REASON_CHARS:
        message = message[: _MAX_REASON_CHARS - 3] + "..."
    return message
