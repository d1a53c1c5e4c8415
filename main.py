"""Deployment wrapper for the frame analysis Cloud Function."""

from __future__ import annotations

import sys
from pathlib import Path

import flask

project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.functions.frame_analysis.functions.main import (
    frame_analysis_handler,
    health_check_handler,
)


def analyze_frames(request: flask.Request) -> flask.Response:
    return frame_analysis_handler(request)


def health_check(request: flask.Request) -> flask.Response:
    return health_check_handler(request)
