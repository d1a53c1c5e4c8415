"""OpenAI client performing one frame operation per call."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from src.shared.batch.errors import RateLimitedError, UpstreamError, parse_retry_after
from src.shared.batch.models import WorkItem, WorkResult
from src.shared.batch.quota import REMAINING_TOKENS_HEADER, RESET_TOKENS_HEADER

from ..config import LLMConfig
from ..contracts import FrameOperation, FrameTask

logger = logging.getLogger(__name__)

_ANALYZE_INSTRUCTION = "Analyze this video frame and provide a detailed description:"
_PROMPT_INSTRUCTION = "Create an AI image generation prompt based on this frame:"
_PROMPT_FROM_DESCRIPTION = (
    "Create an AI image generation prompt for a video frame described as follows:\n{description}"
)


class OpenAIFrameClient:
    """Runs analyze / prompt operations against the chat completions API.

    Client-level retries are disabled; retrying is the batch engine's job.
    Each successful call returns a ``WorkResult`` carrying the rate-limit
    headers so the engine can track the token budget.
    """

    def __init__(self, config: LLMConfig, *, client: Optional[AsyncOpenAI] = None) -> None:
        self.config = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def __call__(self, item: WorkItem) -> WorkResult:
        task: FrameTask = item.payload
        return await self.run(task)

    async def run(self, task: FrameTask) -> WorkResult:
        operation = task.operation
        try:
            raw = await self._client.chat.completions.with_raw_response.create(
                model=self.config.model,
                messages=self._build_messages(task),
                max_tokens=operation.max_tokens,
                temperature=operation.temperature,
            )
        except openai.RateLimitError as exc:
            retry_after = parse_retry_after(exc.response.headers.get("retry-after"))
            raise RateLimitedError(
                f"Rate limit exceeded: {exc.message}. Retry after: {retry_after if retry_after is not None else 'unknown'}",
                retry_after=retry_after,
            ) from exc
        except openai.APITimeoutError as exc:
            raise UpstreamError(f"OpenAI request timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(f"OpenAI connection error: {exc}") from exc
        except openai.APIStatusError as exc:
            status = exc.status_code
            retryable = status >= 500 or status in (408, 409)
            raise UpstreamError(
                f"OpenAI API error {status}: {exc.message}",
                status_code=status,
                retryable=retryable,
            ) from exc

        completion = raw.parse()
        text = _first_choice_text(completion)
        if not text:
            raise UpstreamError("OpenAI returned an empty response")

        headers = raw.headers
        usage = getattr(completion, "usage", None)
        logger.debug(
            "[%s] %s completed (remaining tokens=%s)",
            task.frame_id,
            operation.value,
            headers.get(REMAINING_TOKENS_HEADER),
        )
        return WorkResult(
            value=text,
            remaining=_parse_int(headers.get(REMAINING_TOKENS_HEADER)),
            reset_hint=headers.get(RESET_TOKENS_HEADER),
            tokens_used=getattr(usage, "total_tokens", None),
        )

    def _build_messages(self, task: FrameTask) -> List[Dict[str, Any]]:
        if task.operation is FrameOperation.ANALYZE:
            system_prompt = task.custom_instructions or self.config.analyze_system_prompt
            instruction = _ANALYZE_INSTRUCTION
        else:
            system_prompt = task.custom_instructions or self.config.prompt_system_prompt
            instruction = _PROMPT_INSTRUCTION

        if task.is_text_only:
            user_content: Any = _PROMPT_FROM_DESCRIPTION.format(description=task.description)
        else:
            user_content = [
                {"type": "text", "text": instruction},
                {"type": "image_url", "image_url": {"url": task.image_data}},
            ]

        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]


def _first_choice_text(completion: Any) -> str:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ""
    content = getattr(choices[0].message, "content", None) or ""
    return content.strip()


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        logger.debug("Ignoring malformed rate-limit header value: %r", value)
        return None
