"""Data model shared by the batch engine components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import FailureKind


class ItemPhase(str, Enum):
    """Lifecycle phase of a single work item."""

    QUEUED = "queued"
    PROCESSING = "processing"
    WAITING_RETRY = "waiting_retry"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = frozenset({ItemPhase.COMPLETED, ItemPhase.FAILED, ItemPhase.CANCELLED})


class BatchPhase(str, Enum):
    """Overall phase of a submitted batch."""

    IDLE = "idle"
    PLANNING = "planning"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETE = "complete"


class QualityProfile(str, Enum):
    """Named presets trading throughput against upstream friendliness."""

    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"

    @classmethod
    def coerce(cls, value: "QualityProfile | str") -> "QualityProfile":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown quality profile '{value}'. Allowed: {allowed}") from exc


class RequeuePolicy(str, Enum):
    """Ordering of failed items when they are resubmitted."""

    BACK = "back"
    PRIORITY = "priority"


@dataclass(frozen=True)
class ProfileSettings:
    """Concurrency ceiling, inter-batch delay and batch width of a profile."""

    concurrency: int
    inter_batch_delay_seconds: float
    batch_size: int

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.inter_batch_delay_seconds < 0:
            raise ValueError("inter_batch_delay_seconds must be >= 0")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


DEFAULT_PROFILE_SETTINGS: Dict[QualityProfile, ProfileSettings] = {
    QualityProfile.CONSERVATIVE: ProfileSettings(1, 4.0, 3),
    QualityProfile.BALANCED: ProfileSettings(2, 2.5, 5),
    QualityProfile.AGGRESSIVE: ProfileSettings(3, 1.5, 8),
}


@dataclass
class WorkItem:
    """A unit of work submitted by the caller.

    ``payload`` and ``operation`` are opaque to the engine. Everything except
    ``retry_count`` is treated as immutable once the item is enqueued.
    """

    id: str
    payload: Any
    operation: str
    priority: int = 1
    retry_count: int = 0
    cheaper: bool = False
    fingerprint: Optional[str] = None

    def __post_init__(self) -> None:
        if self.id is None or str(self.id) == "":
            raise ValueError("WorkItem.id must be provided")
        self.id = str(self.id)
        if isinstance(self.operation, Enum):
            self.operation = str(self.operation.value)
        self.operation = str(self.operation)


@dataclass
class WorkResult:
    """Result of a unit of work plus optional upstream quota feedback."""

    value: Any
    remaining: Optional[int] = None
    reset_hint: Optional[Any] = None
    tokens_used: Optional[int] = None


@dataclass
class ItemState:
    """Engine-owned mutable record for one work item."""

    phase: ItemPhase = ItemPhase.QUEUED
    error: Optional[str] = None
    retry_count: int = 0
    is_from_cache: bool = False
    progress_percent: int = 0
    result: Any = None
    failure_kind: Optional[FailureKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "error": self.error,
            "retry_count": self.retry_count,
            "is_from_cache": self.is_from_cache,
            "progress_percent": self.progress_percent,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
        }


@dataclass(frozen=True)
class BatchProgress:
    """Immutable aggregate snapshot published by the scheduler."""

    phase: BatchPhase = BatchPhase.IDLE
    current_batch: int = 0
    total_batches: int = 0
    current_batch_size: int = 0
    items_in_current_batch: int = 0
    total_frames: int = 0
    completed_frames: int = 0
    failed_frames: int = 0
    cached_frames: int = 0
    cancelled_frames: int = 0
    in_flight: int = 0
    estimated_time_remaining: float = 0.0
    processing_speed: float = 0.0
    token_budget_remaining: int = 0
    adaptive_delay_seconds: float = 0.0
    quality_profile: QualityProfile = QualityProfile.BALANCED
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def settled_frames(self) -> int:
        return self.completed_frames + self.failed_frames + self.cancelled_frames

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        payload["quality_profile"] = self.quality_profile.value
        return payload
