"""Token budget tracking driven by upstream rate-limit feedback."""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60.0
_EMA_ALPHA = 0.3
_RESET_HINT_PATTERN = re.compile(
    r"^(?:(?P<h>\d+(?:\.\d+)?)h)?"
    r"(?:(?P<m>\d+(?:\.\d+)?)m(?!s))?"
    r"(?:(?P<s>\d+(?:\.\d+)?)s)?"
    r"(?:(?P<ms>\d+(?:\.\d+)?)ms)?$"
)

REMAINING_TOKENS_HEADER = "x-ratelimit-remaining-tokens"
RESET_TOKENS_HEADER = "x-ratelimit-reset-tokens"


def parse_reset_hint(hint: Any) -> Optional[float]:
    """Convert an upstream reset hint into seconds.

    Accepts plain seconds (``20``, ``"20"``, ``"1.5"``) and duration strings
    such as ``"1m30s"``, ``"45s"``, ``"6m0s"`` or ``"120ms"``.
    """
    if hint is None or isinstance(hint, bool):
        return None
    if isinstance(hint, (int, float)):
        return float(hint) if hint >= 0 else None

    text = str(hint).strip().lower()
    if not text:
        return None
    try:
        value = float(text)
        return value if value >= 0 else None
    except ValueError:
        pass

    match = _RESET_HINT_PATTERN.match(text)
    if not match or not any(match.groupdict().values()):
        logger.debug("Unrecognised reset hint: %r", hint)
        return None

    parts = {key: float(val) for key, val in match.groupdict().items() if val}
    return (
        parts.get("h", 0.0) * 3600
        + parts.get("m", 0.0) * 60
        + parts.get("s", 0.0)
        + parts.get("ms", 0.0) / 1000
    )


@dataclass
class QuotaConfig:
    """Budget constants. All values are defaults, not fixed truths."""

    tokens_per_minute_limit: int = 200_000
    analysis_tokens_per_item: int = 1500
    prompt_tokens_per_item: int = 400
    cheaper_prompt_tokens_per_item: int = 200
    safety_buffer: int = 10_000
    default_batch_size: int = 10
    cost_per_1k_tokens: float = 0.00015
    high_usage_ratio: float = 0.8
    min_request_interval: float = 1.0
    high_usage_request_interval: float = 3.0
    calibrate_from_usage: bool = True

    def validate(self) -> None:
        if self.tokens_per_minute_limit <= 0:
            raise ValueError("tokens_per_minute_limit must be positive")
        for name in (
            "analysis_tokens_per_item",
            "prompt_tokens_per_item",
            "cheaper_prompt_tokens_per_item",
            "safety_buffer",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.analysis_tokens_per_item + self.prompt_tokens_per_item <= 0:
            raise ValueError("full item cost must be positive")
        if self.default_batch_size < 1:
            raise ValueError("default_batch_size must be >= 1")
        if not 0.0 < self.high_usage_ratio <= 1.0:
            raise ValueError("high_usage_ratio must be within (0, 1]")


@dataclass
class QuotaSnapshot:
    """Last upstream-reported quota state."""

    remaining: int
    reset_at: Optional[float]
    observed_rate_per_minute: float
    last_updated: float


@dataclass(frozen=True)
class TokenEstimate:
    analysis_tokens: int
    prompt_tokens: int
    total_tokens: int
    estimated_cost: float


@dataclass(frozen=True)
class BudgetStatus:
    """Advice returned by ``QuotaTracker.check_budget``."""

    can_proceed: bool
    suggested_delay: float
    recommended_batch_size: int
    reason: str


@dataclass(frozen=True)
class RemainingBudget:
    amount: int
    time_to_reset: float


class QuotaTracker:
    """Tracks remaining upstream quota and advises on batch sizing.

    The tracker never blocks; it only advises. Feedback comes from completed
    requests (remaining tokens and reset hints). Without feedback it assumes
    generous defaults and proceeds cautiously.

    Example:
        tracker = QuotaTracker()
        tracker.record_headers(response.headers)

        estimate = tracker.estimate_cost(len(items))
        status = tracker.check_budget(estimate.total_tokens)
        if status.suggested_delay:
            await asyncio.sleep(status.suggested_delay)
    """

    def __init__(
        self,
        config: Optional[QuotaConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or QuotaConfig()
        self.config.validate()
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[QuotaSnapshot] = None
        self._usage: Deque[Tuple[float, int]] = deque()
        self._tokens_per_request: Optional[float] = None
        self._last_request_at: Optional[float] = None
        self._requests_observed = 0

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_feedback(
        self,
        remaining: Optional[int],
        reset_hint: Any = None,
        *,
        tokens_used: Optional[int] = None,
    ) -> None:
        """Record quota feedback from one completed request.

        Args:
            remaining: Upstream-reported remaining tokens (None if absent)
            reset_hint: Seconds or duration string until the window resets
            tokens_used: Tokens consumed by the request, when known
        """
        now = self._clock()
        with self._lock:
            self._last_request_at = now
            self._requests_observed += 1
            previous = self._snapshot

            if tokens_used is None and previous is not None and remaining is not None:
                delta = previous.remaining - int(remaining)
                # A negative delta means the upstream window was refilled
                tokens_used = delta if delta > 0 else None

            if tokens_used:
                self._usage.append((now, int(tokens_used)))
                if self._tokens_per_request is None:
                    self._tokens_per_request = float(tokens_used)
                else:
                    self._tokens_per_request = (
                        _EMA_ALPHA * tokens_used
                        + (1 - _EMA_ALPHA) * self._tokens_per_request
                    )
            self._trim(now)

            if remaining is None:
                if previous is not None:
                    self._snapshot = replace(
                        previous,
                        observed_rate_per_minute=self._observed_rate(),
                        last_updated=now,
                    )
                return

            reset_seconds = parse_reset_hint(reset_hint)
            if reset_seconds is not None:
                reset_at: Optional[float] = now + reset_seconds
            elif previous is not None and previous.reset_at is not None and previous.reset_at > now:
                reset_at = previous.reset_at
            else:
                reset_at = None

            self._snapshot = QuotaSnapshot(
                remaining=max(0, int(remaining)),
                reset_at=reset_at,
                observed_rate_per_minute=self._observed_rate(),
                last_updated=now,
            )

        logger.debug(
            "Quota feedback: remaining=%s reset_in=%s used=%s",
            remaining,
            reset_seconds,
            tokens_used,
        )

    def record_headers(self, headers: Mapping[str, Any]) -> None:
        """Record feedback from upstream rate-limit response headers."""
        lowered = {str(key).lower(): value for key, value in (headers or {}).items()}
        raw_remaining = lowered.get(REMAINING_TOKENS_HEADER)
        remaining: Optional[int] = None
        if raw_remaining is not None:
            try:
                remaining = int(str(raw_remaining).strip())
            except ValueError:
                logger.debug("Ignoring malformed %s header: %r", REMAINING_TOKENS_HEADER, raw_remaining)
        self.record_feedback(remaining, lowered.get(RESET_TOKENS_HEADER))

    # ------------------------------------------------------------------
    # Advice
    # ------------------------------------------------------------------

    def estimate_cost(self, item_count: int, cheaper: bool = False) -> TokenEstimate:
        """Estimate the tokens needed for ``item_count`` items.

        Cheaper items (follow-up work reusing a prior result) skip the
        analysis cost and pay a reduced prompt cost.
        """
        if item_count < 0:
            raise ValueError("item_count must be >= 0")
        with self._lock:
            scale = self._calibration_scale()

        cfg = self.config
        analysis = 0 if cheaper else item_count * cfg.analysis_tokens_per_item
        per_prompt = cfg.cheaper_prompt_tokens_per_item if cheaper else cfg.prompt_tokens_per_item
        prompt = item_count * per_prompt

        analysis_tokens = int(round(analysis * scale))
        prompt_tokens = int(round(prompt * scale))
        total = analysis_tokens + prompt_tokens
        return TokenEstimate(
            analysis_tokens=analysis_tokens,
            prompt_tokens=prompt_tokens,
            total_tokens=total,
            estimated_cost=(total / 1000) * cfg.cost_per_1k_tokens,
        )

    def check_budget(
        self,
        requested: int,
        *,
        per_item_tokens: Optional[float] = None,
    ) -> BudgetStatus:
        """Compare ``requested`` tokens against the remaining budget.

        Args:
            requested: Tokens the next piece of work is expected to consume
            per_item_tokens: Cost of one item, used to size batches
                (defaults to the full per-item cost)
        """
        now = self._clock()
        with self._lock:
            remaining = self._effective_remaining(now)
            per_item = per_item_tokens if per_item_tokens else self._full_item_cost()
            per_item = max(1.0, float(per_item))

            if remaining is None:
                return BudgetStatus(
                    can_proceed=True,
                    suggested_delay=0.0,
                    recommended_batch_size=self.config.default_batch_size,
                    reason="No usage data available, proceeding with caution",
                )

            time_to_reset = self._time_to_reset(now)
            available = remaining - self.config.safety_buffer

            if requested > available:
                batch_size = max(0, math.floor(available / per_item))
                reason = f"Insufficient tokens. Have {available}, need {requested}. " + (
                    f"Can process {batch_size} item(s)." if batch_size > 0 else "Wait for reset."
                )
                return BudgetStatus(
                    can_proceed=batch_size > 0,
                    suggested_delay=time_to_reset + 1.0,
                    recommended_batch_size=max(1, batch_size),
                    reason=reason,
                )

            limit = self.config.tokens_per_minute_limit
            observed = self._observed_rate()
            if observed + requested > limit:
                safe_delay = math.ceil(requested / (limit * self.config.high_usage_ratio) * 60)
                return BudgetStatus(
                    can_proceed=True,
                    suggested_delay=float(safe_delay),
                    recommended_batch_size=max(1, math.floor(available / per_item * 0.5)),
                    reason=f"High usage detected. Suggested delay: {safe_delay}s to avoid rate limits",
                )

            return BudgetStatus(
                can_proceed=True,
                suggested_delay=0.0,
                recommended_batch_size=max(1, math.floor(available / per_item)),
                reason="Good to proceed",
            )

    def remaining_budget(self) -> RemainingBudget:
        now = self._clock()
        with self._lock:
            remaining = self._effective_remaining(now)
            if remaining is None:
                return RemainingBudget(amount=self.config.tokens_per_minute_limit, time_to_reset=0.0)
            return RemainingBudget(
                amount=max(0, remaining - self.config.safety_buffer),
                time_to_reset=self._time_to_reset(now),
            )

    def optimal_batch_size(self, total_items: int) -> int:
        """Conservative batch width: a quarter of the affordable items, capped at 10."""
        budget = self.remaining_budget()
        with self._lock:
            per_item = self._full_item_cost()
        max_items = math.floor(budget.amount / per_item)
        conservative = math.floor(max_items * 0.25)
        return max(1, min(total_items, conservative, 10))

    def should_throttle(self) -> bool:
        """True when the last request was too recent for the current usage level."""
        now = self._clock()
        with self._lock:
            if self._snapshot is None or self._last_request_at is None:
                return False
            limit = self.config.tokens_per_minute_limit
            high_usage = self._observed_rate() > limit * self.config.high_usage_ratio
            required = (
                self.config.high_usage_request_interval
                if high_usage
                else self.config.min_request_interval
            )
            return now - self._last_request_at < required

    def snapshot(self) -> Optional[QuotaSnapshot]:
        now = self._clock()
        with self._lock:
            if self._snapshot is None:
                return None
            self._trim(now)
            return replace(self._snapshot, observed_rate_per_minute=self._observed_rate())

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "requests_observed": self._requests_observed,
                "tokens_per_request": self._tokens_per_request,
                "observed_rate_per_minute": self._observed_rate(),
                "remaining": self._snapshot.remaining if self._snapshot else None,
            }

    def reset(self) -> None:
        with self._lock:
            self._snapshot = None
            self._usage.clear()
            self._tokens_per_request = None
            self._last_request_at = None
            self._requests_observed = 0
        logger.info("Quota tracker reset")

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _full_item_cost(self) -> float:
        cfg = self.config
        return (cfg.analysis_tokens_per_item + cfg.prompt_tokens_per_item) * self._calibration_scale()

    def _calibration_scale(self) -> float:
        if not self.config.calibrate_from_usage or not self._tokens_per_request:
            return 1.0
        configured = self.config.analysis_tokens_per_item + self.config.prompt_tokens_per_item
        return self._tokens_per_request / configured

    def _effective_remaining(self, now: float) -> Optional[int]:
        if self._snapshot is None:
            return None
        reset_at = self._snapshot.reset_at
        if reset_at is not None and now >= reset_at:
            return self.config.tokens_per_minute_limit
        return self._snapshot.remaining

    def _time_to_reset(self, now: float) -> float:
        if self._snapshot is None or self._snapshot.reset_at is None:
            return 0.0
        return max(0.0, self._snapshot.reset_at - now)

    def _observed_rate(self) -> float:
        return float(sum(tokens for _, tokens in self._usage))

    def _trim(self, now: float) -> None:
        while self._usage and now - self._usage[0][0] > _WINDOW_SECONDS:
            self._usage.popleft()
