import asyncio
from typing import Dict, List, Set

import pytest

from src.functions.frame_analysis.core.config import CacheConfig, LLMConfig, ProcessingConfig
from src.functions.frame_analysis.core.contracts import FrameOperation, FrameProcessingRequest, FrameTask
from src.functions.frame_analysis.core.service import FrameProcessingService
from src.shared.batch.cache import InMemoryCacheStore
from src.shared.batch.config import EngineSettings
from src.shared.batch.errors import UpstreamError
from src.shared.batch.models import QualityProfile, WorkItem, WorkResult


class FakeFrameClient:
    """Async handler standing in for the OpenAI client."""

    def __init__(self, failing: Set[str] | None = None, fail_times: int | None = None):
        self.failing = set(failing or ())
        self.fail_times = fail_times
        self.calls: List[str] = []
        self._failures: Dict[str, int] = {}

    async def __call__(self, item: WorkItem) -> WorkResult:
        task: FrameTask = item.payload
        self.calls.append(task.frame_id)
        await asyncio.sleep(0)
        if task.frame_id in self.failing:
            count = self._failures.get(task.frame_id, 0)
            if self.fail_times is None or count < self.fail_times:
                self._failures[task.frame_id] = count + 1
                raise UpstreamError("OpenAI API error 400: invalid image", status_code=400, retryable=False)
        return WorkResult(value=f"{task.operation.value}:{task.frame_id}", tokens_used=300)


def _request(frame_ids, *, retry_failed=False, operation=FrameOperation.ANALYZE) -> FrameProcessingRequest:
    tasks = [
        FrameTask(frame_id, f"data:image/png;base64,{frame_id}", operation=operation)
        for frame_id in frame_ids
    ]
    return FrameProcessingRequest(
        tasks=tasks,
        llm_config=LLMConfig(api_key="sk-test"),
        processing_config=ProcessingConfig(quality_profile=QualityProfile.AGGRESSIVE, retry_failed=retry_failed),
        cache_config=CacheConfig(),
    )


def _service(request, client, store=None) -> FrameProcessingService:
    return FrameProcessingService(
        request,
        client=client,
        cache_store=store or InMemoryCacheStore(),
        settings=EngineSettings(),
    )


def test_all_frames_succeed():
    client = FakeFrameClient()
    updates = []
    service = _service(_request(["f1", "f2", "f3"]), client)

    report = asyncio.run(service.process(on_progress=updates.append))

    assert report.status == "success"
    assert [r.output for r in report.results] == ["analyze:f1", "analyze:f2", "analyze:f3"]
    assert all(r.status == "completed" for r in report.results)
    assert report.progress["completed_frames"] == 3
    assert report.progress["quality_profile"] == "aggressive"
    assert report.request_stats["completed_attempts"] == 3
    assert updates and updates[-1].completed_frames == 3
    assert "error" not in report.to_dict()


def test_partial_failure_is_reported_per_frame():
    client = FakeFrameClient(failing={"f2"})
    service = _service(_request(["f1", "f2", "f3"]), client)

    report = asyncio.run(service.process())

    assert report.status == "partial"
    failed = [r for r in report.results if r.status == "failed"]
    assert [r.frame_id for r in failed] == ["f2"]
    assert failed[0].output is None
    assert "invalid image" in failed[0].error
    assert client.calls.count("f2") == 1


def test_every_frame_failing_marks_report_failed():
    client = FakeFrameClient(failing={"f1", "f2"})
    service = _service(_request(["f1", "f2"]), client)

    report = asyncio.run(service.process())

    assert report.status == "failed"
    assert report.progress["failed_frames"] == 2


def test_retry_failed_pass_recovers_frames():
    client = FakeFrameClient(failing={"f2"}, fail_times=1)
    service = _service(_request(["f1", "f2"], retry_failed=True), client)

    report = asyncio.run(service.process())

    assert report.status == "success"
    retried = next(r for r in report.results if r.frame_id == "f2")
    assert retried.output == "analyze:f2"
    assert retried.retry_count == 1
    assert client.calls.count("f2") == 2


def test_shared_store_serves_repeat_requests_from_cache():
    store = InMemoryCacheStore()
    first_client = FakeFrameClient()
    asyncio.run(_service(_request(["f1", "f2"]), first_client, store).process())

    second_client = FakeFrameClient()
    report = asyncio.run(_service(_request(["f1", "f2"]), second_client, store).process())

    assert second_client.calls == []
    assert all(r.from_cache for r in report.results)
    assert report.progress["cached_frames"] == 2


def test_operation_is_part_of_the_cache_key():
    store = InMemoryCacheStore()
    asyncio.run(_service(_request(["f1"]), FakeFrameClient(), store).process())

    client = FakeFrameClient()
    report = asyncio.run(
        _service(_request(["f1"], operation=FrameOperation.PROMPT), client, store).process()
    )

    assert client.calls == ["f1"]
    assert report.results[0].output == "prompt:f1"
    assert report.results[0].from_cache is False


def test_supabase_backend_requires_credentials():
    with pytest.raises(ValueError):
        CacheConfig(backend="supabase").validate()
