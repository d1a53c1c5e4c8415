"""Circuit breaker protecting callers from a failing upstream dependency."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOL_DOWN_SECONDS = 60.0


@dataclass(frozen=True)
class CircuitState:
    is_open: bool
    consecutive_failures: int
    last_failure_at: float
    next_retry_at: float


class CircuitBreaker:
    """Counts consecutive failures and sheds load once a threshold is hit.

    Closed -> Open after ``failure_threshold`` consecutive failures. While open
    and before ``next_retry_at`` every request is rejected. Afterwards a single
    half-open probe is let through: success closes the circuit, failure
    reopens it with a fresh cool-down.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cool_down_seconds <= 0:
            raise ValueError("cool_down_seconds must be positive")
        self.failure_threshold = failure_threshold
        self.cool_down_seconds = cool_down_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._is_open = False
        self._failures = 0
        self._last_failure_at = 0.0
        self._next_retry_at = 0.0
        self._probe_in_flight = False
        self._times_opened = 0

    @property
    def status(self) -> str:
        """``closed``, ``open`` or ``half_open``."""
        with self._lock:
            return self._status(self._clock())

    @property
    def times_opened(self) -> int:
        return self._times_opened

    def state(self) -> CircuitState:
        with self._lock:
            return CircuitState(
                is_open=self._is_open,
                consecutive_failures=self._failures,
                last_failure_at=self._last_failure_at,
                next_retry_at=self._next_retry_at,
            )

    def allows_requests(self) -> bool:
        """Non-mutating check: would ``before_request`` let a request through now?"""
        with self._lock:
            if not self._is_open:
                return True
            return self._clock() >= self._next_retry_at and not self._probe_in_flight

    def retry_in(self) -> float:
        """Seconds until the next request may be attempted (0 when closed)."""
        with self._lock:
            if not self._is_open:
                return 0.0
            return max(0.0, self._next_retry_at - self._clock())

    def before_request(self) -> None:
        """Admit a request or raise ``CircuitOpenError``."""
        with self._lock:
            if not self._is_open:
                return
            now = self._clock()
            if now < self._next_retry_at or self._probe_in_flight:
                raise CircuitOpenError(
                    next_retry_at=self._next_retry_at,
                    retry_in=max(0.0, self._next_retry_at - now),
                )
            self._probe_in_flight = True
        logger.info("Circuit half-open: allowing probe request")

    def on_result(self, success: bool) -> None:
        """Record the outcome of an admitted request."""
        with self._lock:
            was_probe = self._probe_in_flight
            self._probe_in_flight = False

            if success:
                if self._is_open or self._failures:
                    logger.info("Circuit closed after successful request")
                self._is_open = False
                self._failures = 0
                self._last_failure_at = 0.0
                self._next_retry_at = 0.0
                return

            now = self._clock()
            self._failures += 1
            self._last_failure_at = now

            if was_probe and self._is_open:
                self._next_retry_at = now + self.cool_down_seconds
                self._times_opened += 1
                logger.warning(
                    "Circuit probe failed; reopening for %.0fs", self.cool_down_seconds
                )
            elif not self._is_open and self._failures >= self.failure_threshold:
                self._is_open = True
                self._next_retry_at = now + self.cool_down_seconds
                self._times_opened += 1
                logger.warning(
                    "Circuit opened after %d consecutive failures; cooling down for %.0fs",
                    self._failures,
                    self.cool_down_seconds,
                )

    def on_cancelled(self) -> None:
        """A request was cancelled by the caller; nothing is counted."""
        with self._lock:
            self._probe_in_flight = False

    def reset(self) -> None:
        """Manual override: close the circuit and forget failures."""
        with self._lock:
            self._is_open = False
            self._failures = 0
            self._last_failure_at = 0.0
            self._next_retry_at = 0.0
            self._probe_in_flight = False
        logger.info("Circuit breaker manually reset")

    def _status(self, now: float) -> str:
        if not self._is_open:
            return "closed"
        if now >= self._next_retry_at:
            return "half_open"
        return "open"
