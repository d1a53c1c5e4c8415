"""Configuration models for the frame analysis module."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from src.shared.batch.models import QualityProfile, RequeuePolicy

_ALLOWED_TIMEOUT_RANGE = (1, 300)
_CACHE_BACKENDS = ("memory", "supabase")

DEFAULT_ANALYZE_SYSTEM_PROMPT = (
    "You are an expert video frame analyzer. Analyze the provided frame and describe "
    "what you see in 2-3 concise sentences. Focus on key visual elements, actions, "
    "objects, people, and scene context."
)
DEFAULT_PROMPT_SYSTEM_PROMPT = (
    "You are an expert at creating detailed AI image generation prompts. Based on the "
    "provided video frame, create a concise but detailed prompt that could be used to "
    "recreate this scene with AI image generation tools. Focus on visual elements, style, "
    "composition, lighting, and mood. Keep it under 100 words."
)


def _ensure_non_empty(value: Optional[str], field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} must be provided")
    return value.strip()


def _ensure_timeout(value: float, field_name: str) -> float:
    minimum, maximum = _ALLOWED_TIMEOUT_RANGE
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be numeric") from exc
    if numeric < minimum or numeric > maximum:
        raise ValueError(f"{field_name} must be between {minimum} and {maximum} seconds")
    return numeric


@dataclass
class LLMConfig:
    """Configuration for the OpenAI client used for frame analysis."""

    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    analyze_system_prompt: str = DEFAULT_ANALYZE_SYSTEM_PROMPT
    prompt_system_prompt: str = DEFAULT_PROMPT_SYSTEM_PROMPT

    def validate(self) -> None:
        self.model = _ensure_non_empty(self.model, "model")
        self.api_key = _ensure_non_empty(self.api_key, "api_key")
        self.timeout_seconds = _ensure_timeout(self.timeout_seconds, "timeout_seconds")
        self.analyze_system_prompt = _ensure_non_empty(
            self.analyze_system_prompt, "analyze_system_prompt"
        )
        self.prompt_system_prompt = _ensure_non_empty(
            self.prompt_system_prompt, "prompt_system_prompt"
        )


@dataclass
class ProcessingConfig:
    """Batch behaviour for one processing request."""

    quality_profile: QualityProfile = QualityProfile.BALANCED
    max_attempts: int = 3
    request_timeout_seconds: float = 30.0
    requeue_policy: RequeuePolicy = RequeuePolicy.BACK
    retry_failed: bool = False

    def validate(self) -> None:
        self.quality_profile = QualityProfile.coerce(self.quality_profile)
        self.requeue_policy = RequeuePolicy(self.requeue_policy)
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1 or self.max_attempts > 10:
            raise ValueError("max_attempts must be an integer between 1 and 10")
        self.request_timeout_seconds = _ensure_timeout(
            self.request_timeout_seconds, "request_timeout_seconds"
        )


@dataclass
class CacheConfig:
    """Result cache settings. The Supabase backend needs url and key."""

    enabled: bool = True
    backend: str = "memory"
    ttl_seconds: float = 24 * 60 * 60
    sweep_on_start: bool = False
    url: Optional[str] = None
    key: Optional[str] = None
    table: str = "frame_analysis_cache"

    def validate(self) -> None:
        self.backend = _ensure_non_empty(self.backend, "backend").lower()
        if self.backend not in _CACHE_BACKENDS:
            raise ValueError(f"cache backend must be one of: {', '.join(_CACHE_BACKENDS)}")
        if float(self.ttl_seconds) <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(self.ttl_seconds)
        self.table = _ensure_non_empty(self.table, "table")
        if self.enabled and self.backend == "supabase":
            self.url = _ensure_non_empty(self.url, "url")
            self.key = _ensure_non_empty(self.key, "key")
