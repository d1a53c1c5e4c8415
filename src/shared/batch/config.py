"""Environment-driven settings for the batch engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from ..utils.config_validator import (
    validate_bool_env,
    validate_choice_env,
    validate_float_env,
    validate_int_env,
)
from .cache import CacheStore, ContentCache, DEFAULT_TTL_SECONDS
from .circuit_breaker import (
    DEFAULT_COOL_DOWN_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    CircuitBreaker,
)
from .models import QualityProfile, RequeuePolicy
from .quota import QuotaConfig, QuotaTracker
from .retry import RetryPolicy
from .scheduler import BatchScheduler, Handler

logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """Tunables for one scheduler instance.

    Example:
        settings = EngineSettings.from_env()
        scheduler = settings.build_scheduler(handler)
    """

    quality_profile: QualityProfile = QualityProfile.BALANCED
    max_attempts: int = 3
    request_timeout_seconds: float = 30.0
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS
    tokens_per_minute: int = 200_000
    safety_buffer: int = 10_000
    calibrate_from_usage: bool = True
    cache_enabled: bool = True
    cache_ttl_seconds: float = DEFAULT_TTL_SECONDS
    requeue_policy: RequeuePolicy = RequeuePolicy.BACK
    max_circuit_wait_seconds: Optional[float] = None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Read settings from the environment; unset variables keep defaults.

        Raises:
            ConfigurationError: A variable is set to an invalid value
        """
        defaults = cls()
        # Unset means the full circuit cool-down is honoured between batches
        max_circuit_wait = None
        if os.getenv("BATCH_MAX_CIRCUIT_WAIT_SECONDS"):
            max_circuit_wait = validate_float_env("BATCH_MAX_CIRCUIT_WAIT_SECONDS", min_value=0.0)

        settings = cls(
            quality_profile=QualityProfile(
                validate_choice_env(
                    "BATCH_QUALITY_PROFILE",
                    [p.value for p in QualityProfile],
                    default=defaults.quality_profile.value,
                )
            ),
            max_attempts=validate_int_env("BATCH_MAX_ATTEMPTS", defaults.max_attempts, min_value=1),
            request_timeout_seconds=validate_float_env(
                "BATCH_REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds, min_value=0.1
            ),
            failure_threshold=validate_int_env(
                "CIRCUIT_FAILURE_THRESHOLD", defaults.failure_threshold, min_value=1
            ),
            cool_down_seconds=validate_float_env(
                "CIRCUIT_COOL_DOWN_SECONDS", defaults.cool_down_seconds, min_value=0.1
            ),
            tokens_per_minute=validate_int_env(
                "QUOTA_TOKENS_PER_MINUTE", defaults.tokens_per_minute, min_value=1
            ),
            safety_buffer=validate_int_env("QUOTA_SAFETY_BUFFER", defaults.safety_buffer, min_value=0),
            calibrate_from_usage=validate_bool_env("QUOTA_CALIBRATE", defaults.calibrate_from_usage),
            cache_enabled=validate_bool_env("CACHE_ENABLED", defaults.cache_enabled),
            cache_ttl_seconds=validate_float_env(
                "CACHE_TTL_SECONDS", defaults.cache_ttl_seconds, min_value=1
            ),
            requeue_policy=RequeuePolicy(
                validate_choice_env(
                    "BATCH_REQUEUE_POLICY",
                    [p.value for p in RequeuePolicy],
                    default=defaults.requeue_policy.value,
                )
            ),
            max_circuit_wait_seconds=max_circuit_wait,
        )
        logger.debug("Loaded engine settings: %s", settings)
        return settings

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            timeout_seconds=self.request_timeout_seconds,
        )

    def quota_config(self) -> QuotaConfig:
        return QuotaConfig(
            tokens_per_minute_limit=self.tokens_per_minute,
            safety_buffer=self.safety_buffer,
            calibrate_from_usage=self.calibrate_from_usage,
        )

    def build_scheduler(
        self,
        handler: Handler,
        *,
        cache_store: Optional[CacheStore] = None,
    ) -> BatchScheduler:
        """Wire a scheduler with a fresh quota tracker, breaker and cache."""
        cache = None
        if self.cache_enabled:
            cache = ContentCache(cache_store, default_ttl_seconds=self.cache_ttl_seconds)
        return BatchScheduler(
            handler,
            quota=QuotaTracker(self.quota_config()),
            breaker=CircuitBreaker(self.failure_threshold, self.cool_down_seconds),
            cache=cache,
            retry_policy=self.retry_policy(),
            profile=self.quality_profile,
            requeue_policy=self.requeue_policy,
            cache_ttl_seconds=self.cache_ttl_seconds,
            max_circuit_wait_seconds=self.max_circuit_wait_seconds,
        )
