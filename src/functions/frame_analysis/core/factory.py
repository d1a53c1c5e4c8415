"""Request factory that parses incoming payloads into ``FrameProcessingRequest`` objects."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from src.shared.utils.env import get_env, load_env
from src.shared.utils.logging import get_logger

from .config import CacheConfig, LLMConfig, ProcessingConfig
from .contracts import FrameOperation, FrameProcessingRequest, FrameTask

LOGGER = get_logger(__name__)

_BOOL_TRUE = {"true", "1", "yes", "on"}
_BOOL_FALSE = {"false", "0", "no", "off"}

_DEFAULT_LLM_MODEL = "gpt-4o-mini"
_DEFAULT_LLM_TIMEOUT = 30


def request_from_payload(payload: Mapping[str, Any]) -> FrameProcessingRequest:
    """Build a ``FrameProcessingRequest`` from a raw payload mapping.

    Example payload::

        {
            "operation": "analyze",
            "quality_profile": "balanced",
            "frames": [
                {"id": "f-1", "image_data": "data:image/png;base64,..."},
                {"id": "f-2", "image_data": "...", "operation": "prompt", "priority": 2}
            ],
            "cache": {"backend": "supabase"}
        }
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Payload must be a mapping")

    load_env()

    frames = payload.get("frames")
    if not isinstance(frames, (list, tuple)) or not frames:
        raise ValueError("`frames` must be a non-empty list")

    default_operation = _coerce_operation(payload.get("operation", FrameOperation.ANALYZE.value))
    tasks = [_build_task(frame, index, default_operation) for index, frame in enumerate(frames)]

    request = FrameProcessingRequest(
        tasks=tasks,
        llm_config=_build_llm_config(payload.get("llm")),
        processing_config=_build_processing_config(payload.get("processing"), payload.get("quality_profile")),
        cache_config=_build_cache_config(payload.get("cache")),
    )
    LOGGER.debug("Parsed frame processing request with %d frame(s)", len(tasks))
    return request


def _build_task(frame: Any, index: int, default_operation: FrameOperation) -> FrameTask:
    data = _mapping_or_none(frame, f"frames[{index}]")
    if not data:
        raise ValueError(f"`frames[{index}]` must be a non-empty mapping")

    frame_id = _first_non_empty(data.get("id"), data.get("frame_id"), str(index))
    image_data = _first_non_empty(data.get("image_data"), data.get("imageData"))
    if not image_data:
        raise ValueError(f"`frames[{index}].image_data` is required")

    operation = default_operation
    if data.get("operation") is not None:
        operation = _coerce_operation(data["operation"])

    return FrameTask(
        frame_id=frame_id,
        image_data=image_data,
        operation=operation,
        priority=_coerce_int(data.get("priority", 1), field_name=f"frames[{index}].priority"),
        description=_first_non_empty(data.get("description")),
        custom_instructions=_first_non_empty(
            data.get("custom_instructions"), data.get("customInstructions")
        ),
    )


def _build_llm_config(block: Any) -> LLMConfig:
    data = _mapping_or_none(block, "llm") or {}
    api_key = _first_non_empty(data.get("api_key"), get_env("OPENAI_API_KEY"))
    if not api_key:
        raise ValueError("OpenAI API key must be provided via `llm.api_key` or OPENAI_API_KEY env")

    config = LLMConfig(
        model=_first_non_empty(data.get("model"), get_env("OPENAI_MODEL"), _DEFAULT_LLM_MODEL),
        api_key=api_key,
        timeout_seconds=_coerce_float(
            _first_non_none(
                data.get("timeout_seconds"),
                get_env("OPENAI_TIMEOUT_SECONDS"),
                _DEFAULT_LLM_TIMEOUT,
            ),
            field_name="llm.timeout_seconds",
        ),
    )
    analyze_prompt = _first_non_empty(data.get("analyze_system_prompt"), get_env("ANALYZE_FRAME_PROMPT"))
    if analyze_prompt:
        config.analyze_system_prompt = analyze_prompt
    prompt_prompt = _first_non_empty(data.get("prompt_system_prompt"), get_env("GENERATE_PROMPT_PROMPT"))
    if prompt_prompt:
        config.prompt_system_prompt = prompt_prompt
    config.validate()
    return config


def _build_processing_config(block: Any, quality_profile: Any) -> ProcessingConfig:
    data = _mapping_or_none(block, "processing") or {}
    config = ProcessingConfig(
        quality_profile=_first_non_empty(
            data.get("quality_profile"),
            quality_profile,
            get_env("BATCH_QUALITY_PROFILE"),
            "balanced",
        ),
        max_attempts=_coerce_int(
            _first_non_none(data.get("max_attempts"), get_env("BATCH_MAX_ATTEMPTS"), 3),
            field_name="processing.max_attempts",
        ),
        request_timeout_seconds=_coerce_float(
            _first_non_none(
                data.get("request_timeout_seconds"),
                get_env("BATCH_REQUEST_TIMEOUT_SECONDS"),
                30,
            ),
            field_name="processing.request_timeout_seconds",
        ),
        requeue_policy=_first_non_empty(
            data.get("requeue_policy"),
            get_env("BATCH_REQUEUE_POLICY"),
            "back",
        ).lower(),
        retry_failed=_coerce_bool(data.get("retry_failed", False), field_name="processing.retry_failed"),
    )
    config.validate()
    return config


def _build_cache_config(block: Any) -> CacheConfig:
    data = _mapping_or_none(block, "cache") or {}
    backend = _first_non_empty(data.get("backend"), get_env("FRAME_CACHE_BACKEND"), "memory")
    config = CacheConfig(
        enabled=_coerce_bool(data.get("enabled", True), field_name="cache.enabled"),
        backend=backend,
        ttl_seconds=_coerce_float(
            _first_non_none(data.get("ttl_seconds"), get_env("CACHE_TTL_SECONDS"), 24 * 60 * 60),
            field_name="cache.ttl_seconds",
        ),
        sweep_on_start=_coerce_bool(data.get("sweep_on_start", False), field_name="cache.sweep_on_start"),
        url=_first_non_empty(data.get("url"), get_env("SUPABASE_URL")),
        key=_first_non_empty(data.get("key"), get_env("SUPABASE_KEY")),
        table=_first_non_empty(data.get("table"), "frame_analysis_cache"),
    )
    config.validate()
    return config


def _coerce_operation(value: Any) -> FrameOperation:
    try:
        return FrameOperation(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(op.value for op in FrameOperation)
        raise ValueError(f"Unknown operation '{value}'. Allowed: {allowed}") from exc


def _mapping_or_none(value: Any, label: str) -> Optional[Mapping[str, Any]]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value
    raise ValueError(f"`{label}` block must be a mapping when provided")


def _first_non_empty(*values: Optional[Any]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
        if value is not None and not isinstance(value, str):
            text = str(getattr(value, "value", value)).strip()
            if text:
                return text
    return None


def _first_non_none(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _coerce_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer") from exc


def _coerce_float(value: Any, *, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be numeric") from exc


def _coerce_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _BOOL_TRUE:
            return True
        if lowered in _BOOL_FALSE:
            return False
    raise ValueError(f"{field_name} must be a boolean")
