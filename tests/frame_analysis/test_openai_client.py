import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import openai
import pytest

from src.functions.frame_analysis.core.config import LLMConfig
from src.functions.frame_analysis.core.contracts import FrameOperation, FrameTask
from src.functions.frame_analysis.core.llm import OpenAIFrameClient
from src.shared.batch.errors import FailureKind, RateLimitedError, UpstreamError, classify_failure
from src.shared.batch.models import WorkResult

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


class FakeRawResponse:
    def __init__(self, text: str, headers: Dict[str, str], total_tokens: int | None = 310):
        self.headers = httpx.Headers(headers)
        usage = SimpleNamespace(total_tokens=total_tokens) if total_tokens is not None else None
        self._completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
            usage=usage,
        )

    def parse(self):
        return self._completion


class FakeRawCompletions:
    def __init__(self, outcome: Any):
        self.outcome = outcome
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeAsyncOpenAI:
    def __init__(self, outcome: Any):
        self.raw = FakeRawCompletions(outcome)
        self.chat = SimpleNamespace(completions=SimpleNamespace(with_raw_response=self.raw))


def _client(outcome: Any) -> tuple[OpenAIFrameClient, FakeRawCompletions]:
    fake = FakeAsyncOpenAI(outcome)
    config = LLMConfig(api_key="sk-test")
    config.validate()
    return OpenAIFrameClient(config, client=fake), fake.raw


def _status_error(cls, status: int, headers: Dict[str, str] | None = None):
    response = httpx.Response(status, headers=headers or {}, request=_REQUEST)
    return cls("upstream said no", response=response, body=None)


def test_analyze_returns_description_with_quota_feedback():
    raw = FakeRawResponse(
        "  A quarterback drops back to pass.  ",
        {"x-ratelimit-remaining-tokens": "149000", "x-ratelimit-reset-tokens": "6m0s"},
    )
    client, calls = _client(raw)
    task = FrameTask("f-1", "data:image/png;base64,AAAA")

    result = asyncio.run(client.run(task))

    assert isinstance(result, WorkResult)
    assert result.value == "A quarterback drops back to pass."
    assert result.remaining == 149000
    assert result.reset_hint == "6m0s"
    assert result.tokens_used == 310

    request = calls.calls[0]
    assert request["model"] == "gpt-4o-mini"
    assert request["max_tokens"] == 120
    assert request["temperature"] == 0.2
    user_content = request["messages"][1]["content"]
    assert user_content[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}


def test_prompt_from_description_is_sent_as_text():
    client, calls = _client(FakeRawResponse("cinematic wide shot", {}, total_tokens=None))
    task = FrameTask(
        "f-2",
        "data:image/png;base64,AAAA",
        operation=FrameOperation.PROMPT,
        description="A crowded stadium at dusk.",
        custom_instructions="Write in the style of a film poster.",
    )

    result = asyncio.run(client.run(task))

    assert result.remaining is None
    assert result.tokens_used is None
    request = calls.calls[0]
    assert request["max_tokens"] == 200
    assert request["temperature"] == 0.7
    assert request["messages"][0]["content"] == "Write in the style of a film poster."
    assert "A crowded stadium at dusk." in request["messages"][1]["content"]


def test_rate_limit_maps_to_rate_limited_error_with_retry_after():
    error = _status_error(openai.RateLimitError, 429, {"retry-after": "7"})
    client, _ = _client(error)

    with pytest.raises(RateLimitedError) as excinfo:
        asyncio.run(client.run(FrameTask("f-1", "x")))

    assert excinfo.value.retry_after == 7
    assert "Retry after: 7" in str(excinfo.value)
    assert classify_failure(excinfo.value) is FailureKind.RATE_LIMITED


@pytest.mark.parametrize(
    "error, retryable",
    [
        (_status_error(openai.InternalServerError, 503), True),
        (_status_error(openai.BadRequestError, 400), False),
        (openai.APITimeoutError(request=_REQUEST), True),
        (openai.APIConnectionError(request=_REQUEST), True),
    ],
)
def test_upstream_errors_are_classified(error, retryable):
    client, _ = _client(error)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.run(FrameTask("f-1", "x")))

    assert excinfo.value.retryable is retryable
    expected = FailureKind.TRANSIENT if retryable else FailureKind.PERMANENT
    assert classify_failure(excinfo.value) is expected


def test_empty_completion_is_a_retryable_failure():
    client, _ = _client(FakeRawResponse("   ", {}))

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(client.run(FrameTask("f-1", "x")))

    assert excinfo.value.retryable is True
