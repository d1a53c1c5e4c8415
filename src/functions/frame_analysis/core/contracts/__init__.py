"""Contracts for the frame analysis module."""

from .frame_report import FrameProcessingReport, FrameResult
from .frame_request import FrameOperation, FrameProcessingRequest, FrameTask

__all__ = [
    "FrameOperation",
    "FrameProcessingReport",
    "FrameProcessingRequest",
    "FrameResult",
    "FrameTask",
]
