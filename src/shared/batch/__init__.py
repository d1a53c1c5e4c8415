"""Adaptive batch engine for rate-limited upstream work.

Components:
- BatchScheduler: Plans batches, dispatches items and publishes progress
- QuotaTracker: Token budget advice from upstream rate-limit feedback
- CircuitBreaker: Sheds load while the upstream keeps failing
- ConcurrencyLimiter: FIFO semaphore with an adjustable ceiling
- ContentCache: Content-addressed result cache with TTL
- RetryExecutor: Per-item timeout, classification and backoff
- ProgressTracker: Throughput, ETA and progress log lines

Usage:
    from src.shared.batch import BatchScheduler, WorkItem, QualityProfile
    from src.shared.batch import EngineSettings

    scheduler = EngineSettings.from_env().build_scheduler(handler)
    handle = await scheduler.submit(items, QualityProfile.BALANCED)
    progress = await handle.wait()
"""

from .cache import CacheEntry, CacheStore, ContentCache, InMemoryCacheStore, fingerprint_payload
from .circuit_breaker import CircuitBreaker, CircuitState
from .concurrency import ConcurrencyLimiter
from .config import EngineSettings
from .errors import (
    AttemptTimeoutError,
    BatchEngineError,
    BatchInProgressError,
    CircuitOpenError,
    FailureKind,
    ProfileChangeRejected,
    RateLimitedError,
    RetriesExhaustedError,
    UpstreamError,
)
from .models import (
    DEFAULT_PROFILE_SETTINGS,
    BatchPhase,
    BatchProgress,
    ItemPhase,
    ItemState,
    ProfileSettings,
    QualityProfile,
    RequeuePolicy,
    WorkItem,
    WorkResult,
)
from .progress import ProgressTracker
from .quota import BudgetStatus, QuotaConfig, QuotaTracker, parse_reset_hint
from .retry import RetryEvent, RetryExecutor, RetryPolicy, retry_on_network_error
from .scheduler import BatchHandle, BatchScheduler

__all__ = [
    "AttemptTimeoutError",
    "BatchEngineError",
    "BatchHandle",
    "BatchInProgressError",
    "BatchPhase",
    "BatchProgress",
    "BatchScheduler",
    "BudgetStatus",
    "CacheEntry",
    "CacheStore",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "ConcurrencyLimiter",
    "ContentCache",
    "DEFAULT_PROFILE_SETTINGS",
    "EngineSettings",
    "FailureKind",
    "InMemoryCacheStore",
    "ItemPhase",
    "ItemState",
    "ProfileChangeRejected",
    "ProfileSettings",
    "ProgressTracker",
    "QualityProfile",
    "QuotaConfig",
    "QuotaTracker",
    "RateLimitedError",
    "RequeuePolicy",
    "RetriesExhaustedError",
    "RetryEvent",
    "RetryExecutor",
    "RetryPolicy",
    "UpstreamError",
    "WorkItem",
    "WorkResult",
    "fingerprint_payload",
    "parse_reset_hint",
    "retry_on_network_error",
]
