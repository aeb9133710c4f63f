"""Housekeeping for debug artifacts written by the scraper."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

MAX_AGE_HOURS = 24
MAX_FILES_KEEP = 10


def cleanup_directory(
    directory: Path,
    patterns: Iterable[str] = ("debug-*.png",),
    max_age_hours: float = MAX_AGE_HOURS,
    max_files: int = MAX_FILES_KEEP,
    now: Optional[float] = None,
) -> int:
    """Delete matching files older than ``max_age_hours`` or beyond the newest ``max_files``."""
    if not directory.is_dir():
        return 0

    now = time.time() if now is None else now
    candidates = {
        path for pattern in patterns for path in directory.glob(pattern) if path.is_file()
    }
    newest_first = sorted(candidates, key=lambda path: path.stat().st_mtime, reverse=True)

    deleted = 0
    for index, path in enumerate(newest_first):
        age_hours = (now - path.stat().st_mtime) / 3600
        if age_hours <= max_age_hours and index < max_files:
            continue
        try:
            path.unlink()
            deleted += 1
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", path, exc)

    if deleted:
        logger.info("Cleaned up %d old file(s) in %s", deleted, directory)
    return deleted
