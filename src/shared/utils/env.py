"""Environment variable loading for the engine and the function modules."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _candidate_env_files(env_file: Optional[str]) -> List[Path]:
    if env_file:
        path = Path(env_file)
        return [path] if path.exists() else []

    current = Path.cwd()
    found = [parent / ".env" for parent in reversed(current.parents) if (parent / ".env").exists()]
    if (current / ".env").exists():
        found.append(current / ".env")
    return found


def load_env(env_file: Optional[str] = None, override: bool = False) -> List[Path]:
    """Load environment variables from .env files.

    Without ``env_file`` every ``.env`` from the filesystem root down to the
    working directory is loaded, outermost first.

    Args:
        env_file: Explicit path to a .env file.
        override: Whether to override existing environment variables.

    Returns:
        The files that were loaded.
    """
    paths = _candidate_env_files(env_file)
    if not paths:
        logger.debug("No .env file found, using system environment")
        return []

    for path in paths:
        load_dotenv(path, override=override)
        logger.debug("Loaded environment from %s", path)
    return paths


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)
