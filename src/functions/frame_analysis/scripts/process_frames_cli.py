"""Command-line tool for running a directory of frames through the batch engine."""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[4]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.shared.batch.models import BatchProgress, QualityProfile
from src.shared.utils.env import load_env
from src.shared.utils.logging import get_logger, setup_logging

from src.functions.frame_analysis.core.contracts import FrameOperation
from src.functions.frame_analysis.core.factory import request_from_payload
from src.functions.frame_analysis.core.service import FrameProcessingService

LOGGER = get_logger(__name__)

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".gif"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze captured video frames (or generate image prompts) in adaptive batches.",
    )
    parser.add_argument(
        "frames_dir",
        type=Path,
        help="Directory containing frame images (png, jpg, webp, gif).",
    )
    parser.add_argument(
        "--operation",
        choices=[op.value for op in FrameOperation],
        default=FrameOperation.ANALYZE.value,
        help="Operation to run for every frame (default: analyze).",
    )
    parser.add_argument(
        "--profile",
        choices=[p.value for p in QualityProfile],
        help="Quality profile (default: BATCH_QUALITY_PROFILE env or balanced).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        help="Process at most this many frames.",
    )
    parser.add_argument(
        "--instructions",
        help="Custom system instructions for every frame.",
    )
    parser.add_argument(
        "--cache-backend",
        choices=["memory", "supabase"],
        help="Result cache backend (default: FRAME_CACHE_BACKEND env or memory).",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable the result cache.",
    )
    parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Resubmit failed frames once after the first pass.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write the JSON report to this file instead of stdout.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Explicit .env file to load.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level)
    if args.env_file:
        load_env(str(args.env_file))
    else:
        load_env()

    try:
        frames = _load_frames(args.frames_dir, args.limit, args.instructions)
    except ValueError as exc:
        parser.error(str(exc))

    payload: Dict[str, Any] = {
        "operation": args.operation,
        "frames": frames,
        "processing": {"retry_failed": args.retry_failed},
        "cache": {"enabled": not args.no_cache},
    }
    if args.profile:
        payload["quality_profile"] = args.profile
    if args.cache_backend:
        payload["cache"]["backend"] = args.cache_backend

    try:
        request = request_from_payload(payload)
    except ValueError as exc:
        parser.error(f"Failed to build frame request: {exc}")

    LOGGER.info("Processing %d frame(s) from %s", len(request.tasks), args.frames_dir)
    report = asyncio.run(FrameProcessingService(request).process(on_progress=_ProgressPrinter()))

    report_json = json.dumps(report.to_dict(), indent=2, ensure_ascii=False)
    if args.output:
        args.output.write_text(report_json, encoding="utf-8")
        print(f"Report written to {args.output}", file=sys.stderr)
    else:
        print(report_json)

    return 0 if report.status == "success" else 1


class _ProgressPrinter:
    """Prints one status line per finished batch."""

    def __init__(self) -> None:
        self._last_batch = 0

    def __call__(self, progress: BatchProgress) -> None:
        batch_done = progress.items_in_current_batch == progress.current_batch_size
        if not progress.current_batch or not batch_done or progress.current_batch == self._last_batch:
            return
        self._last_batch = progress.current_batch
        print(
            f"batch {progress.current_batch}/{progress.total_batches}: "
            f"{progress.completed_frames}/{progress.total_frames} done, "
            f"{progress.cached_frames} cached, {progress.failed_frames} failed, "
            f"{progress.processing_speed:.1f} frames/min",
            file=sys.stderr,
        )


def _load_frames(frames_dir: Path, limit: Optional[int], instructions: Optional[str]) -> List[Dict[str, Any]]:
    if not frames_dir.is_dir():
        raise ValueError(f"{frames_dir} is not a directory")

    paths = sorted(p for p in frames_dir.iterdir() if p.suffix.lower() in _IMAGE_SUFFIXES)
    if limit is not None:
        paths = paths[: max(0, limit)]
    if not paths:
        raise ValueError(f"No frame images found in {frames_dir}")

    frames = []
    for path in paths:
        frame: Dict[str, Any] = {"id": path.stem, "image_data": _data_url(path)}
        if instructions:
            frame["custom_instructions"] = instructions
        frames.append(frame)
    return frames


def _data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
