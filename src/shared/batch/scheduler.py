"""Adaptive batch scheduler driving work items through cache, retries and quota advice."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
)

from .cache import ContentCache, fingerprint_payload
from .circuit_breaker import CircuitBreaker
from .concurrency import ConcurrencyLimiter
from .errors import (
    BatchInProgressError,
    CircuitOpenError,
    FailureKind,
    ProfileChangeRejected,
    RateLimitedError,
    RetriesExhaustedError,
    classify_failure,
    short_reason,
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
from .quota import QuotaTracker
from .retry import RetryEvent, RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

Handler = Callable[[WorkItem], Awaitable[Any]]
ProgressListener = Callable[[BatchProgress], None]

_FAILED = object()


class BatchScheduler:
    """Top-level orchestrator for rate-limited, retryable batches of work.

    Items are served from the content cache where possible; the rest are
    partitioned into batches sized by the quality profile and quota advice.
    Each batch is dispatched concurrently (bounded by the concurrency
    limiter) and fully settled before the next one starts. One item failing
    never aborts its siblings.

    Example:
        scheduler = BatchScheduler(
            analyze_frame,
            quota=QuotaTracker(),
            breaker=CircuitBreaker(),
            cache=ContentCache(),
        )
        handle = await scheduler.submit(items, QualityProfile.BALANCED)
        progress = await handle.wait()
        if progress.failed_frames:
            await (await handle.retry_failed()).wait()
    """

    def __init__(
        self,
        handler: Handler,
        *,
        quota: Optional[QuotaTracker] = None,
        breaker: Optional[CircuitBreaker] = None,
        cache: Optional[ContentCache] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        profile: QualityProfile | str = QualityProfile.BALANCED,
        profile_settings: Optional[Mapping[QualityProfile, ProfileSettings]] = None,
        requeue_policy: RequeuePolicy = RequeuePolicy.BACK,
        cache_ttl_seconds: Optional[float] = None,
        max_circuit_wait_seconds: Optional[float] = None,
        fingerprint_prefix_bytes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self._handler = handler
        self._clock = clock
        self._sleep = sleep
        self.quota = quota if quota is not None else QuotaTracker(clock=clock)
        self.breaker = breaker if breaker is not None else CircuitBreaker(clock=clock)
        self.cache = cache
        self._profile_settings: Dict[QualityProfile, ProfileSettings] = dict(DEFAULT_PROFILE_SETTINGS)
        if profile_settings:
            self._profile_settings.update(profile_settings)
        self._profile = QualityProfile.coerce(profile)
        self.limiter = limiter if limiter is not None else ConcurrencyLimiter(self.settings.concurrency)
        self.limiter.set_limit(self.settings.concurrency)
        self.executor = RetryExecutor(
            self.breaker,
            self.limiter,
            retry_policy,
            sleep=sleep,
            rng=rng,
            clock=clock,
        )
        self.requeue_policy = RequeuePolicy(requeue_policy)
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_circuit_wait_seconds = max_circuit_wait_seconds
        self.fingerprint_prefix_bytes = fingerprint_prefix_bytes

        self._items: Dict[str, WorkItem] = {}
        self._states: Dict[str, ItemState] = {}
        self._order: Dict[str, int] = {}
        self._fingerprints: Dict[str, str] = {}
        self._failed_order: List[str] = []
        self._leaders: Dict[str, asyncio.Future] = {}
        self._listeners: List[ProgressListener] = []

        self._phase = BatchPhase.IDLE
        self._task: Optional[asyncio.Task] = None
        self._paused = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._tracker: Optional[ProgressTracker] = None
        self._current_batch = 0
        self._total_batches = 0
        self._current_batch_size = 0
        self._items_in_current_batch = 0
        self._speed = 0.0
        self._eta = 0.0
        self._adaptive_delay = self.settings.inter_batch_delay_seconds
        self._rate_limited_until: Optional[float] = None

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    @property
    def profile(self) -> QualityProfile:
        return self._profile

    @property
    def settings(self) -> ProfileSettings:
        return self._profile_settings[self._profile]

    @property
    def phase(self) -> BatchPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(
        self,
        items: Iterable[WorkItem],
        profile: Optional[QualityProfile | str] = None,
    ) -> "BatchHandle":
        """Start processing ``items`` in the background and return a handle."""
        if self.is_running:
            raise BatchInProgressError("Processing already in progress")

        items = list(items)
        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                raise ValueError(f"Duplicate work item id: {item.id}")
            seen.add(item.id)

        if profile is not None:
            self._apply_profile(QualityProfile.coerce(profile))

        ordered = sorted(items, key=lambda item: -item.priority)
        self._items = {item.id: item for item in ordered}
        self._order = {item.id: index for index, item in enumerate(items)}
        self._states = {
            item.id: ItemState(retry_count=item.retry_count) for item in ordered
        }
        self._fingerprints = {item.id: self._fingerprint(item) for item in ordered}
        self._failed_order = []
        self._speed = 0.0
        self._eta = 0.0

        logger.info(
            "Submitting %d item(s) with %s profile (concurrency=%d, batch_size=%d)",
            len(ordered),
            self._profile.value,
            self.settings.concurrency,
            self.settings.batch_size,
        )
        return self._start(ordered)

    async def run(
        self,
        items: Iterable[WorkItem],
        profile: Optional[QualityProfile | str] = None,
    ) -> BatchProgress:
        """Submit ``items`` and wait for the batch to settle."""
        handle = await self.submit(items, profile)
        return await handle.wait()

    async def wait(self) -> BatchProgress:
        """Wait for the current run to finish (completed or stopped)."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return self.get_progress()

    def pause(self) -> bool:
        """Stop starting new batches; in-flight work still settles."""
        if not self.is_running or self._paused:
            return False
        self._paused = True
        self._resume_event.clear()
        self._set_phase(BatchPhase.PAUSED)
        logger.info("Batch processing paused")
        return True

    def resume(self) -> bool:
        if not self._paused:
            return False
        self._paused = False
        self._resume_event.set()
        if self.is_running:
            self._set_phase(BatchPhase.PROCESSING)
        logger.info("Batch processing resumed")
        return True

    def stop(self) -> bool:
        """Abort in-flight work, discard queued work and return to idle."""
        if not self.is_running:
            return False
        self._paused = False
        self._resume_event.set()
        self._task.cancel()
        logger.info("Stop requested; cancelling in-flight work")
        return True

    async def retry_failed(self) -> Optional["BatchHandle"]:
        """Resubmit items currently in the failed phase as a fresh batch.

        Returns None (and changes nothing) when there are no failed items.
        """
        if self.is_running:
            raise BatchInProgressError("Cannot retry failed items while processing")

        failed_ids: List[str] = []
        for item_id in self._failed_order:
            if item_id in failed_ids:
                continue
            if self._states[item_id].phase is ItemPhase.FAILED:
                failed_ids.append(item_id)
        if not failed_ids:
            logger.info("No failed items to retry")
            return None

        if self.requeue_policy is RequeuePolicy.PRIORITY:
            failed_ids.sort(key=lambda item_id: (-self._items[item_id].priority, self._order[item_id]))

        items = []
        for item_id in failed_ids:
            item = self._items[item_id]
            item.retry_count += 1
            self._states[item_id] = ItemState(retry_count=item.retry_count)
            items.append(item)
        self._failed_order = [i for i in self._failed_order if i not in set(failed_ids)]

        logger.info("Retrying %d failed item(s)", len(items))
        return self._start(items)

    def set_profile(self, profile: QualityProfile | str) -> None:
        if self._phase is BatchPhase.PROCESSING:
            raise ProfileChangeRejected("Cannot change quality profile while processing")
        self._apply_profile(QualityProfile.coerce(profile))
        self._publish()

    def get_item_state(self, item_id: str) -> Optional[ItemState]:
        state = self._states.get(str(item_id))
        return replace(state) if state is not None else None

    def get_progress(self) -> BatchProgress:
        completed = failed = cancelled = cached = 0
        for state in self._states.values():
            if state.phase is ItemPhase.COMPLETED:
                completed += 1
                if state.is_from_cache:
                    cached += 1
            elif state.phase is ItemPhase.FAILED:
                failed += 1
            elif state.phase is ItemPhase.CANCELLED:
                cancelled += 1

        return BatchProgress(
            phase=self._phase,
            current_batch=self._current_batch,
            total_batches=self._total_batches,
            current_batch_size=self._current_batch_size,
            items_in_current_batch=self._items_in_current_batch,
            total_frames=len(self._states),
            completed_frames=completed,
            failed_frames=failed,
            cached_frames=cached,
            cancelled_frames=cancelled,
            in_flight=self.limiter.in_flight(),
            estimated_time_remaining=self._eta,
            processing_speed=self._speed,
            token_budget_remaining=self.quota.remaining_budget().amount,
            adaptive_delay_seconds=self._adaptive_delay,
            quality_profile=self._profile,
            extra={"circuit": self.breaker.status},
        )

    def results(self) -> Dict[str, Any]:
        """Results of completed items keyed by item id."""
        return {
            item_id: state.result
            for item_id, state in self._states.items()
            if state.phase is ItemPhase.COMPLETED
        }

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener for progress snapshots; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _start(self, items: List[WorkItem]) -> "BatchHandle":
        self._paused = False
        self._resume_event.set()
        self._current_batch = 0
        self._total_batches = 0
        self._current_batch_size = 0
        self._items_in_current_batch = 0
        self._rate_limited_until = None
        self._set_phase(BatchPhase.PLANNING)
        self._task = asyncio.create_task(self._run(items))
        self._task.add_done_callback(self._on_run_done)
        return BatchHandle(self)

    async def _run(self, items: List[WorkItem]) -> None:
        self._tracker = ProgressTracker(len(items), stage=self._profile.value, clock=self._clock)
        try:
            pending = await self._serve_from_cache(items)
            batches = self._plan(pending)
            self._total_batches = len(batches)
            if not self._paused:
                self._set_phase(BatchPhase.PROCESSING)

            if batches:
                await self._wait_for_budget(batches[0])

            for index, batch in enumerate(batches):
                await self._wait_if_paused()
                await self._process_batch(batch, index)
                if index < len(batches) - 1:
                    await self._wait_between_batches(batches[index + 1])

            self._set_phase(BatchPhase.COMPLETE)
            self._tracker.log_summary()
        except asyncio.CancelledError:
            logger.info("Batch processing stopped")
            raise
        except Exception:
            logger.exception("Batch processing error")
            raise

    def _on_run_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._settle_remaining(ItemPhase.CANCELLED, "cancelled", FailureKind.CANCELLED)
            self._paused = False
            self._set_phase(BatchPhase.IDLE)
        elif task.exception() is not None:
            self._settle_remaining(ItemPhase.FAILED, "internal error", FailureKind.TRANSIENT)
            self._set_phase(BatchPhase.IDLE)
        for future in self._leaders.values():
            if not future.done():
                future.set_result(_FAILED)
        self._leaders.clear()

    async def _serve_from_cache(self, items: List[WorkItem]) -> List[WorkItem]:
        if self.cache is None or not items:
            return list(items)

        hits = await asyncio.gather(
            *(self.cache.lookup(self._fingerprints[item.id]) for item in items)
        )
        pending: List[WorkItem] = []
        for item, hit in zip(items, hits):
            if hit is None:
                pending.append(item)
                continue
            logger.debug("Using cached result for %s", item.id)
            self._complete(item, hit, from_cache=True)

        if len(pending) < len(items):
            logger.info("Served %d item(s) from cache", len(items) - len(pending))
        return pending

    def _plan(self, pending: List[WorkItem]) -> List[List[WorkItem]]:
        if not pending:
            return []
        estimate = self._estimate_tokens(pending)
        status = self.quota.check_budget(estimate, per_item_tokens=estimate / len(pending))
        size = max(1, min(self.settings.batch_size, status.recommended_batch_size))
        batches = [pending[i:i + size] for i in range(0, len(pending), size)]
        logger.info(
            "Planned %d batch(es) of up to %d item(s) for %d uncached item(s): %s",
            len(batches),
            size,
            len(pending),
            status.reason,
        )
        return batches

    async def _wait_for_budget(self, batch: Sequence[WorkItem]) -> None:
        estimate = self._estimate_tokens(batch)
        status = self.quota.check_budget(estimate, per_item_tokens=estimate / len(batch))
        if status.can_proceed or status.suggested_delay <= 0:
            return
        logger.info(
            "Token budget exhausted; waiting %.1fs before the first batch: %s",
            status.suggested_delay,
            status.reason,
        )
        self._adaptive_delay = status.suggested_delay
        self._publish()
        await self._sleep(status.suggested_delay)

    async def _wait_if_paused(self) -> None:
        if not self._paused:
            return
        self._set_phase(BatchPhase.PAUSED)
        await self._resume_event.wait()
        self._set_phase(BatchPhase.PROCESSING)

    async def _process_batch(self, batch: Sequence[WorkItem], index: int) -> None:
        self._current_batch = index + 1
        self._current_batch_size = len(batch)
        self._items_in_current_batch = 0
        self._publish()

        if self.quota.should_throttle():
            delay = self.settings.inter_batch_delay_seconds
            logger.info("Throttling: waiting %.1fs before batch %d", delay, index + 1)
            await self._sleep(delay)

        outcomes = await asyncio.gather(
            *(self._process_item(item, recheck_cache=index > 0) for item in batch),
            return_exceptions=True,
        )
        for item, outcome in zip(batch, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Unexpected failure while processing %s: %s", item.id, outcome)
                self._mark_failed(item, "internal error", FailureKind.TRANSIENT)

        self._speed = self._tracker.rate_per_second() * 60
        self._eta = self._tracker.eta_seconds()
        if self._tracker.should_log() or index + 1 == self._total_batches:
            self._tracker.log_progress(
                extra_stats={"Batch": f"{index + 1}/{self._total_batches}"}
            )
        self._publish()

    async def _wait_between_batches(self, next_batch: Sequence[WorkItem]) -> None:
        estimate = self._estimate_tokens(next_batch)
        status = self.quota.check_budget(estimate, per_item_tokens=estimate / len(next_batch))
        if status.suggested_delay > 0:
            delay = status.suggested_delay
            logger.info("Waiting %.1fs due to token budget: %s", delay, status.reason)
        else:
            delay = self.settings.inter_batch_delay_seconds

        now = self._clock()
        if self._rate_limited_until is not None and self._rate_limited_until > now:
            rate_wait = self._rate_limited_until - now
            if rate_wait > delay:
                logger.info("Honouring upstream retry-after: waiting %.1fs", rate_wait)
                delay = rate_wait
        self._rate_limited_until = None

        if not self.breaker.allows_requests():
            circuit_wait = self.breaker.retry_in()
            if self.max_circuit_wait_seconds is not None:
                circuit_wait = min(circuit_wait, self.max_circuit_wait_seconds)
            if circuit_wait > delay:
                logger.info("Circuit open: delaying next batch by %.1fs", circuit_wait)
                delay = circuit_wait

        self._adaptive_delay = delay
        self._publish()
        if delay > 0:
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    async def _process_item(self, item: WorkItem, *, recheck_cache: bool = False) -> None:
        fingerprint = self._fingerprints[item.id]
        self._update(item.id, phase=ItemPhase.PROCESSING, error=None, failure_kind=None, progress_percent=10)

        leader = self._leaders.get(fingerprint)
        if leader is not None:
            shared = await asyncio.shield(leader)
            if shared is not _FAILED:
                self._complete(item, shared, from_cache=True)
                return
            leader = None

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._leaders[fingerprint] = future
        outcome: Any = _FAILED
        try:
            # Earlier batches of this run may have cached the same content
            if recheck_cache and self.cache is not None:
                hit = await self.cache.lookup(fingerprint)
                if hit is not None:
                    outcome = hit
                    self._complete(item, hit, from_cache=True)
                    return

            self._update(item.id, progress_percent=30)
            raw = await self.executor.run(
                lambda: self._handler(item),
                item.id,
                on_attempt=self._on_attempt,
                on_retry=self._on_retry,
            )
            value = self._absorb_feedback(raw)
            self._update(item.id, progress_percent=90)
            if self.cache is not None:
                await self.cache.store(fingerprint, value, self.cache_ttl_seconds)
            outcome = value
            self._complete(item, value, from_cache=False)
        except CircuitOpenError:
            self._mark_failed(item, "circuit open", FailureKind.CIRCUIT_OPEN)
        except RetriesExhaustedError as exc:
            if isinstance(exc.last_error, RateLimitedError):
                self._note_rate_limit(exc.last_error.retry_after)
            self._mark_failed(item, short_reason(exc), FailureKind.RETRIES_EXHAUSTED)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._mark_failed(item, short_reason(exc), classify_failure(exc))
        finally:
            if not future.done():
                future.set_result(outcome)
            if self._leaders.get(fingerprint) is future:
                del self._leaders[fingerprint]

    def _on_attempt(self, item_id: str, attempt: int) -> None:
        self._update(item_id, phase=ItemPhase.PROCESSING, progress_percent=60)

    def _on_retry(self, event: RetryEvent) -> None:
        item = self._items[event.item_id]
        item.retry_count += 1
        self._update(
            event.item_id,
            phase=ItemPhase.WAITING_RETRY,
            error=event.error,
            retry_count=item.retry_count,
            progress_percent=30,
        )
        if event.kind is FailureKind.RATE_LIMITED:
            self._note_rate_limit(event.retry_after if event.retry_after is not None else event.delay)

    def _note_rate_limit(self, retry_after: Optional[float]) -> None:
        if not retry_after:
            return
        until = self._clock() + retry_after
        if self._rate_limited_until is None or until > self._rate_limited_until:
            self._rate_limited_until = until

    def _absorb_feedback(self, raw: Any) -> Any:
        if not isinstance(raw, WorkResult):
            return raw
        self.quota.record_feedback(raw.remaining, raw.reset_hint, tokens_used=raw.tokens_used)
        return raw.value

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _complete(self, item: WorkItem, value: Any, *, from_cache: bool) -> None:
        self._update(
            item.id,
            phase=ItemPhase.COMPLETED,
            error=None,
            failure_kind=None,
            is_from_cache=from_cache,
            result=value,
            progress_percent=100,
        )
        self._items_in_current_batch += 1
        if self._tracker is not None:
            self._tracker.increment(success=True, cached=from_cache)

    def _mark_failed(self, item: WorkItem, reason: str, kind: FailureKind) -> None:
        if self._states[item.id].phase.is_terminal:
            return
        self._update(
            item.id,
            phase=ItemPhase.FAILED,
            error=reason,
            failure_kind=kind,
            progress_percent=0,
        )
        self._failed_order.append(item.id)
        self._items_in_current_batch += 1
        if self._tracker is not None:
            self._tracker.increment(success=False)
        logger.warning("[%s] Item failed (%s): %s", item.id, kind.value, reason)

    def _settle_remaining(self, phase: ItemPhase, reason: str, kind: FailureKind) -> None:
        for item_id, state in self._states.items():
            if state.phase.is_terminal:
                continue
            self._states[item_id] = replace(
                state,
                phase=phase,
                error=reason,
                failure_kind=kind,
                progress_percent=0,
            )
            if phase is ItemPhase.FAILED:
                self._failed_order.append(item_id)

    def _update(self, item_id: str, **changes: Any) -> None:
        state = self._states.get(item_id)
        if state is None:
            return
        self._states[item_id] = replace(state, **changes)
        self._publish()

    def _set_phase(self, phase: BatchPhase) -> None:
        if self._phase is phase:
            return
        logger.debug("Batch phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        self._publish()

    def _apply_profile(self, profile: QualityProfile) -> None:
        self._profile = profile
        self.limiter.set_limit(self.settings.concurrency)
        self._adaptive_delay = self.settings.inter_batch_delay_seconds

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_progress()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed")

    def _fingerprint(self, item: WorkItem) -> str:
        if item.fingerprint:
            return item.fingerprint
        return fingerprint_payload(
            item.payload,
            operation=item.operation,
            prefix_bytes=self.fingerprint_prefix_bytes,
        )

    def _estimate_tokens(self, items: Sequence[WorkItem]) -> int:
        cheaper = sum(1 for item in items if item.cheaper)
        full = len(items) - cheaper
        return (
            self.quota.estimate_cost(full).total_tokens
            + self.quota.estimate_cost(cheaper, cheaper=True).total_tokens
        )


class BatchHandle:
    """Caller-facing handle for one submitted batch."""

    def __init__(self, scheduler: BatchScheduler):
        self._scheduler = scheduler

    @property
    def phase(self) -> BatchPhase:
        return self._scheduler.phase

    def pause(self) -> bool:
        return self._scheduler.pause()

    def resume(self) -> bool:
        return self._scheduler.resume()

    def stop(self) -> bool:
        return self._scheduler.stop()

    async def retry_failed(self) -> Optional["BatchHandle"]:
        return await self._scheduler.retry_failed()

    def get_item_state(self, item_id: str) -> Optional[ItemState]:
        return self._scheduler.get_item_state(item_id)

    def get_progress(self) -> BatchProgress:
        return self._scheduler.get_progress()

    def set_profile(self, profile: QualityProfile | str) -> None:
        self._scheduler.set_profile(profile)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        return self._scheduler.subscribe(listener)

    def results(self) -> Dict[str, Any]:
        return self._scheduler.results()

    async def wait(self) -> BatchProgress:
        return await self._scheduler.wait()
