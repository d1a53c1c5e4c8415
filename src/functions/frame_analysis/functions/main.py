"""Cloud Function entry point for the frame analysis service."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import flask
import functions_framework

# Ensure project root is on sys.path before importing project modules
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.frame_analysis.core.factory import request_from_payload
from src.functions.frame_analysis.core.service import FrameProcessingService

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def frame_analysis_handler(request: flask.Request) -> flask.Response:
    """HTTP handler that analyses a batch of frames."""

    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        logger.warning("Unsupported HTTP method: %s", request.method)
        return _error_response("Method not allowed. Use POST.", status=405)

    try:
        payload = request.get_json(silent=True) or {}
        request_model = request_from_payload(payload)
        logger.info(
            "Incoming frame request: %d frame(s), profile=%s, cache=%s",
            len(request_model.tasks),
            request_model.processing_config.quality_profile.value,
            request_model.cache_config.backend if request_model.cache_config.enabled else "disabled",
        )

        service = FrameProcessingService(request_model)
        report = _run_async(service.process())
        return _cors_response(report.to_dict())

    except (ValueError, ConfigurationError) as exc:
        logger.warning("Invalid request: %s", exc)
        return _error_response(str(exc), status=400)
    except Exception:  # noqa: BLE001
        logger.error("Unexpected failure", exc_info=True)
        return _error_response("Internal server error", status=500)


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint."""
    return _cors_response({"status": "healthy", "service": "frame_analysis"})


def _cors_response(body: dict[str, Any], status: int = 200) -> flask.Response:
    """Create a CORS-enabled JSON response."""
    response = flask.make_response(json.dumps(body, ensure_ascii=False), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "authorization, x-client-info, apikey, content-type"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    """Create an error response with CORS headers."""
    return _cors_response({"status": "error", "message": message}, status=status)


def _run_async(coro):
    """Run an async coroutine in a new or existing event loop."""
    try:
        return asyncio.run(coro)
    except RuntimeError as exc:
        if "event loop" in str(exc).lower():
            loop = asyncio.new_event_loop()
            try:
                asyncio.set_event_loop(loop)
                return loop.run_until_complete(coro)
            finally:
                loop.close()
        raise


@functions_framework.http
def analyze_frames(request: flask.Request):
    """Entry point for functions-framework."""
    return frame_analysis_handler(request)


@functions_framework.http
def health_check(request: flask.Request):
    """Health check entry point."""
    return health_check_handler(request)
