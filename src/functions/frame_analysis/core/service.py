"""Frame processing service wiring the batch engine to the OpenAI client."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from src.shared.batch.cache import CacheStore
from src.shared.batch.config import EngineSettings
from src.shared.batch.models import BatchProgress, ItemPhase, WorkItem
from src.shared.batch.scheduler import BatchScheduler
from src.shared.db.connection import SupabaseConfig, get_supabase_client

from .contracts import FrameProcessingReport, FrameProcessingRequest, FrameResult
from .db import SupabaseCacheStore
from .llm import OpenAIFrameClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchProgress], None]


class FrameProcessingService:
    """Runs every frame of a request through the adaptive batch engine.

    Example:
        request = request_from_payload(payload)
        report = await FrameProcessingService(request).process()
    """

    def __init__(
        self,
        request: FrameProcessingRequest,
        *,
        client: Optional[Callable[[WorkItem], object]] = None,
        cache_store: Optional[CacheStore] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.request = request
        self._client = client
        self._cache_store = cache_store
        self._settings = settings
        self.scheduler: Optional[BatchScheduler] = None

    async def process(self, on_progress: Optional[ProgressCallback] = None) -> FrameProcessingReport:
        started = time.time()
        scheduler = self._build_scheduler()
        self.scheduler = scheduler
        processing = self.request.processing_config

        if self.request.cache_config.sweep_on_start and scheduler.cache is not None:
            removed = await scheduler.cache.sweep_expired()
            logger.info("Removed %d expired cache entries before processing", removed)

        unsubscribe = scheduler.subscribe(on_progress) if on_progress else None
        items = [task.to_work_item() for task in self.request.tasks]
        try:
            progress = await scheduler.run(items, processing.quality_profile)
            if processing.retry_failed and progress.failed_frames:
                logger.info("Retrying %d failed frame(s)", progress.failed_frames)
                handle = await scheduler.retry_failed()
                if handle is not None:
                    progress = await handle.wait()
        finally:
            if unsubscribe is not None:
                unsubscribe()

        report = self._build_report(scheduler, progress, started)
        logger.info(
            "Frame processing %s: %d completed (%d cached), %d failed in %dms",
            report.status,
            progress.completed_frames,
            progress.cached_frames,
            progress.failed_frames,
            report.processing_time_ms,
        )
        return report

    def _build_scheduler(self) -> BatchScheduler:
        processing = self.request.processing_config
        cache_config = self.request.cache_config
        settings = replace(
            self._settings or EngineSettings.from_env(),
            quality_profile=processing.quality_profile,
            max_attempts=processing.max_attempts,
            request_timeout_seconds=processing.request_timeout_seconds,
            requeue_policy=processing.requeue_policy,
            cache_enabled=cache_config.enabled,
            cache_ttl_seconds=cache_config.ttl_seconds,
        )
        client = self._client or OpenAIFrameClient(self.request.llm_config)
        return settings.build_scheduler(client, cache_store=self._resolve_cache_store())

    def _resolve_cache_store(self) -> Optional[CacheStore]:
        if self._cache_store is not None:
            return self._cache_store
        cache_config = self.request.cache_config
        if not cache_config.enabled or cache_config.backend != "supabase":
            return None
        supabase = get_supabase_client(SupabaseConfig(url=cache_config.url, key=cache_config.key))
        return SupabaseCacheStore(supabase, table_name=cache_config.table)

    def _build_report(
        self,
        scheduler: BatchScheduler,
        progress: BatchProgress,
        started: float,
    ) -> FrameProcessingReport:
        results = []
        for task in self.request.tasks:
            state = scheduler.get_item_state(task.frame_id)
            completed = state is not None and state.phase is ItemPhase.COMPLETED
            results.append(
                FrameResult(
                    frame_id=task.frame_id,
                    operation=task.operation.value,
                    status=state.phase.value if state is not None else "unknown",
                    output=state.result if completed else None,
                    error=state.error if state is not None else None,
                    from_cache=bool(state and state.is_from_cache),
                    retry_count=state.retry_count if state is not None else 0,
                )
            )

        if progress.completed_frames == progress.total_frames:
            status = "success"
        elif progress.completed_frames:
            status = "partial"
        else:
            status = "failed"

        return FrameProcessingReport(
            status=status,
            results=results,
            progress=progress.to_dict(),
            processing_time_ms=int((time.time() - started) * 1000),
            request_stats=scheduler.executor.get_stats(),
        )
