"""Retry helpers: the async RetryExecutor and a blocking network retry wrapper."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpcore
import httpx

from .circuit_breaker import CircuitBreaker
from .concurrency import ConcurrencyLimiter
from .errors import (
    AttemptTimeoutError,
    FailureKind,
    RateLimitedError,
    RetriesExhaustedError,
    UpstreamError,
    classify_failure,
    parse_retry_after,
    short_reason,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.LocalProtocolError,
    httpx.RemoteProtocolError,
    httpcore.LocalProtocolError,
    httpcore.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


@dataclass
class RetryPolicy:
    """Attempt limits, per-attempt timeout and backoff parameters (seconds)."""

    max_attempts: int = 3
    timeout_seconds: float = 30.0
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0
    rate_limit_jitter: float = 2.0

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.jitter < 0 or self.rate_limit_jitter < 0:
            raise ValueError("jitter must be >= 0")


@dataclass(frozen=True)
class RetryEvent:
    """Published before the executor sleeps ahead of another attempt."""

    item_id: str
    attempt: int
    max_attempts: int
    delay: float
    kind: FailureKind
    error: str
    retry_after: Optional[float] = None


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    error: BaseException,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before the attempt following failed attempt number ``attempt``.

    Rate-limit failures honour the advertised retry-after plus jitter. Other
    failures (and rate limits without a hint) use ``base * 2^(attempt-1)``
    plus jitter, capped at ``max_delay``.
    """
    rng = rng or random
    retry_after = _retry_after_of(error)
    if retry_after is not None:
        return retry_after + rng.uniform(0, policy.rate_limit_jitter)

    exponential = policy.base_delay * (2 ** max(0, attempt - 1))
    return min(policy.max_delay, exponential + rng.uniform(0, policy.jitter))


def _retry_after_of(error: BaseException) -> Optional[float]:
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        return error.retry_after
    if isinstance(error, UpstreamError):
        return parse_retry_after(error.message)
    return None


class RetryExecutor:
    """Runs one unit of work with timeout, classification and backoff.

    Each attempt consults the circuit breaker (fail fast when open), then
    waits for a concurrency slot, then races the work against the timeout.
    The slot is always released and the outcome reported to the breaker,
    except that cancellation is never counted as a failure.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        limiter: ConcurrencyLimiter,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.breaker = breaker
        self.limiter = limiter
        self.policy = policy or RetryPolicy()
        self.policy.validate()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._stats: Dict[str, float] = {
            "total_attempts": 0,
            "completed_attempts": 0,
            "failed_attempts": 0,
            "cancelled_attempts": 0,
            "total_response_time": 0.0,
        }

    async def run(
        self,
        work: Callable[[], Awaitable[T]],
        item_id: str,
        *,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        on_attempt: Optional[Callable[[str, int], None]] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
    ) -> T:
        """Run ``work`` until it succeeds or attempts are exhausted.

        Raises:
            CircuitOpenError: The breaker rejected the attempt
            UpstreamError: A non-retryable upstream failure
            RetriesExhaustedError: Every attempt failed
            asyncio.CancelledError: The caller cancelled
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.policy.timeout_seconds
        attempts_allowed = max_attempts if max_attempts is not None else self.policy.max_attempts
        if attempts_allowed < 1:
            raise ValueError("max_attempts must be >= 1")

        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts_allowed + 1):
            self.breaker.before_request()
            token = await self.limiter.acquire()

            succeeded = False
            cancelled = False
            started = self._clock()
            self._stats["total_attempts"] += 1
            try:
                if on_attempt is not None:
                    on_attempt(item_id, attempt)
                result = await asyncio.wait_for(work(), timeout=timeout)
                succeeded = True
                return result
            except asyncio.CancelledError:
                cancelled = True
                raise
            except asyncio.TimeoutError:
                last_error = AttemptTimeoutError(timeout)
            except Exception as exc:
                last_error = exc
            finally:
                self.limiter.release(token)
                self._stats["total_response_time"] += self._clock() - started
                if cancelled:
                    self._stats["cancelled_attempts"] += 1
                    self.breaker.on_cancelled()
                else:
                    self.breaker.on_result(succeeded)
                    key = "completed_attempts" if succeeded else "failed_attempts"
                    self._stats[key] += 1

            kind = classify_failure(last_error)
            if kind is FailureKind.PERMANENT:
                logger.warning("[%s] Permanent upstream failure: %s", item_id, short_reason(last_error))
                raise last_error

            if attempt >= attempts_allowed:
                break

            delay = compute_backoff(self.policy, attempt, last_error, self._rng)
            event = RetryEvent(
                item_id=item_id,
                attempt=attempt,
                max_attempts=attempts_allowed,
                delay=delay,
                kind=kind,
                error=short_reason(last_error),
                retry_after=_retry_after_of(last_error),
            )
            logger.warning(
                "[%s] Attempt %d/%d failed (%s): %s. Retrying in %.1fs...",
                item_id,
                attempt,
                attempts_allowed,
                kind.value,
                event.error,
                delay,
            )
            if on_retry is not None:
                on_retry(event)
            await self._sleep(delay)

        if last_error is None:
            raise RuntimeError("Retry loop completed without result or exception")
        logger.error("[%s] Giving up after %d attempts: %s", item_id, attempts_allowed, short_reason(last_error))
        raise RetriesExhaustedError(last_error, attempts_allowed) from last_error

    def get_stats(self) -> Dict[str, Any]:
        """Attempt counters, average response time and success rate."""
        completed = self._stats["completed_attempts"]
        failed = self._stats["failed_attempts"]
        settled = completed + failed
        return {
            "total_attempts": int(self._stats["total_attempts"]),
            "completed_attempts": int(completed),
            "failed_attempts": int(failed),
            "cancelled_attempts": int(self._stats["cancelled_attempts"]),
            "average_response_time": (
                self._stats["total_response_time"] / self._stats["total_attempts"]
                if self._stats["total_attempts"]
                else 0.0
            ),
            "success_rate": completed / settled if settled else 0.0,
            "in_flight": self.limiter.in_flight(),
        }

    def is_healthy(self) -> bool:
        """Healthy when the circuit is closed and more than 70% of attempts succeed."""
        stats = self.get_stats()
        settled = stats["completed_attempts"] + stats["failed_attempts"]
        rate_ok = stats["success_rate"] > 0.7 if settled else True
        return self.breaker.status == "closed" and rate_ok


def retry_on_network_error(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
) -> T:
    """Retry a blocking call on network/protocol errors with exponential backoff.

    Args:
        func: Callable to retry (should take no arguments)
        max_retries: Maximum number of attempts
        initial_delay: Initial delay in seconds (doubles each retry)

    Returns:
        Function result

    Raises:
        Exception: Last exception if all retries fail

    Example:
        row = retry_on_network_error(
            lambda: client.table("frame_analysis_cache").select("*").execute(),
            max_retries=3,
        )
    """
    delay = initial_delay

    for attempt in range(max_retries):
        try:
            return func()
        except _RETRYABLE_NETWORK_ERRORS as e:
            if attempt < max_retries - 1:
                logger.warning(
                    "Network error (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt + 1,
                    max_retries,
                    e,
                    delay,
                )
                time.sleep(delay)
                delay *= 2
            else:
                logger.error("Network error after %d attempts: %s", max_retries, e)
                raise

    raise RuntimeError("Retry loop completed without result or exception")
