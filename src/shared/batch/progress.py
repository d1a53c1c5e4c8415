"""Progress tracking for batch processing runs."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Tracks processing progress and calculates throughput metrics.

    Provides progress logging with rate calculation and ETA estimation.
    Counters are guarded by a lock so concurrent workers can report.

    Example:
        tracker = ProgressTracker(total_items=120, stage="balanced")

        for item in items:
            ok = await process(item)
            tracker.increment(success=ok)
            if tracker.should_log():
                tracker.log_progress()

        tracker.log_summary()
    """

    def __init__(
        self,
        total_items: int,
        stage: str,
        *,
        log_interval: int = 10,
        log_time_interval: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize progress tracker.

        Args:
            total_items: Total number of items to process
            stage: Label included in log lines (e.g. the quality profile)
            log_interval: Number of items between logs
            log_time_interval: Seconds between time-based logs
            clock: Monotonic time source
        """
        self.total_items = total_items
        self.stage = stage
        self.log_interval = log_interval
        self.log_time_interval = log_time_interval

        self._clock = clock
        self.start_time = clock()
        self.processed_count = 0
        self.success_count = 0
        self.error_count = 0
        self.cached_count = 0
        self.lock = threading.Lock()
        self.last_log_time = self.start_time
        self.last_log_count = 0

    def increment(self, success: bool = True, *, cached: bool = False) -> None:
        """Increment counters.

        Args:
            success: Whether processing succeeded
            cached: Whether the result was served from cache
        """
        with self.lock:
            self.processed_count += 1
            if success:
                self.success_count += 1
            else:
                self.error_count += 1
            if cached:
                self.cached_count += 1

    def should_log(self) -> bool:
        with self.lock:
            count_trigger = self.processed_count - self.last_log_count >= self.log_interval
            time_trigger = self._clock() - self.last_log_time >= self.log_time_interval
            return count_trigger or time_trigger

    def rate_per_second(self) -> float:
        """Settled items per second since the tracker started."""
        with self.lock:
            return self._rate()

    def eta_seconds(self) -> float:
        with self.lock:
            rate = self._rate()
            remaining = max(0, self.total_items - self.processed_count)
            return remaining / rate if rate > 0 else 0.0

    def log_progress(self, extra_stats: Optional[Dict[str, Any]] = None) -> None:
        """Log current progress with all metrics.

        Args:
            extra_stats: Optional additional stats to include in log
        """
        with self.lock:
            rate = self._rate()
            remaining = max(0, self.total_items - self.processed_count)
            eta = remaining / rate if rate > 0 else 0.0
            percent = (
                (self.processed_count / self.total_items * 100)
                if self.total_items > 0
                else 0
            )

            parts = [
                f"Progress: {self.processed_count:,}/{self.total_items:,} ({percent:.1f}%)",
                f"Rate: {rate * 60:.1f} items/min",
                f"Cached: {self.cached_count}",
            ]

            if extra_stats:
                for key, value in extra_stats.items():
                    if isinstance(value, float):
                        parts.append(f"{key}: {value:.1f}")
                    else:
                        parts.append(f"{key}: {value}")

            parts.extend([
                f"Errors: {self.error_count}",
                f"ETA: {eta:.0f}s",
                f"Stage: {self.stage}",
            ])

            logger.info(" | ".join(parts))

            self.last_log_time = self._clock()
            self.last_log_count = self.processed_count

    def log_summary(self) -> None:
        """Log final summary."""
        with self.lock:
            elapsed = self._clock() - self.start_time
            rate = self._rate()
            summary_parts = [
                f"Total processed: {self.processed_count:,}",
                f"Successful: {self.success_count:,}",
                f"From cache: {self.cached_count:,}",
                f"Errors: {self.error_count:,}",
                f"Time: {elapsed:.1f}s",
                f"Avg rate: {rate * 60:.1f} items/min",
                f"Stage: {self.stage}",
            ]

        logger.info("Batch Processing Complete:\n  " + "\n  ".join(summary_parts))

    def get_stats(self) -> Dict[str, Any]:
        """Get current progress statistics."""
        with self.lock:
            elapsed = self._clock() - self.start_time
            rate = self._rate()
            remaining = max(0, self.total_items - self.processed_count)

            return {
                "processed": self.processed_count,
                "successful": self.success_count,
                "errors": self.error_count,
                "cached": self.cached_count,
                "total": self.total_items,
                "percent": (
                    self.processed_count / self.total_items * 100
                    if self.total_items > 0
                    else 0
                ),
                "rate_per_minute": rate * 60,
                "elapsed_seconds": elapsed,
                "eta_seconds": remaining / rate if rate > 0 else 0.0,
                "stage": self.stage,
            }

    def _rate(self) -> float:
        elapsed = self._clock() - self.start_time
        return self.processed_count / elapsed if elapsed > 0 else 0.0
