"""Request contracts for frame analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from src.shared.batch.cache import fingerprint_payload
from src.shared.batch.models import WorkItem

from ..config import CacheConfig, LLMConfig, ProcessingConfig


class FrameOperation(str, Enum):
    """Model call performed for a frame."""

    ANALYZE = "analyze"
    PROMPT = "prompt"

    @property
    def max_tokens(self) -> int:
        return 120 if self is FrameOperation.ANALYZE else 200

    @property
    def temperature(self) -> float:
        return 0.2 if self is FrameOperation.ANALYZE else 0.7


@dataclass
class FrameTask:
    """One captured frame and the operation to run on it.

    ``image_data`` is a data URL (``data:image/png;base64,...``) or an
    https URL. A prompt task that already carries the frame's description
    is sent as text only and is therefore cheaper.
    """

    frame_id: str
    image_data: str
    operation: FrameOperation = FrameOperation.ANALYZE
    priority: int = 1
    description: Optional[str] = None
    custom_instructions: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.frame_id or not str(self.frame_id).strip():
            raise ValueError("frame id must be provided")
        self.frame_id = str(self.frame_id).strip()
        if not isinstance(self.image_data, str) or not self.image_data.strip():
            raise ValueError(f"image_data is required for frame {self.frame_id}")
        self.operation = FrameOperation(self.operation)
        if not isinstance(self.priority, int):
            raise ValueError(f"priority must be an integer for frame {self.frame_id}")

    @property
    def is_text_only(self) -> bool:
        return self.operation is FrameOperation.PROMPT and bool(self.description)

    def fingerprint(self) -> str:
        source = self.description if self.is_text_only else self.image_data
        if self.custom_instructions:
            source = f"{source}\x00{self.custom_instructions}"
        return fingerprint_payload(source, operation=self.operation.value)

    def to_work_item(self) -> WorkItem:
        return WorkItem(
            id=self.frame_id,
            payload=self,
            operation=self.operation.value,
            priority=self.priority,
            cheaper=self.is_text_only,
            fingerprint=self.fingerprint(),
        )


@dataclass
class FrameProcessingRequest:
    """A batch of frames plus the configuration to process them with."""

    tasks: List[FrameTask]
    llm_config: LLMConfig
    processing_config: ProcessingConfig = field(default_factory=ProcessingConfig)
    cache_config: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self) -> None:
        if not self.tasks:
            raise ValueError("At least one frame is required")
        seen = set()
        for task in self.tasks:
            if task.frame_id in seen:
                raise ValueError(f"Duplicate frame id: {task.frame_id}")
            seen.add(task.frame_id)
