"""Report contracts returned by the frame processing service."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FrameResult:
    frame_id: str
    operation: str
    status: str
    output: Optional[str] = None
    error: Optional[str] = None
    from_cache: bool = False
    retry_count: int = 0


@dataclass
class FrameProcessingReport:
    """Outcome of one processing request.

    ``status`` is ``success`` when every frame completed, ``partial`` when
    some did, and ``failed`` otherwise.
    """

    status: str
    results: List[FrameResult] = field(default_factory=list)
    progress: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: int = 0
    request_stats: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def failed(self) -> List[FrameResult]:
        return [result for result in self.results if result.status == "failed"]

    def to_dict(self) -> Dict[str, Any]:
        body = asdict(self)
        if self.error is None:
            body.pop("error")
        return body
