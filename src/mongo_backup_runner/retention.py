from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


def sweep_expired_files(directory: Path, retention_days: int, *, now: datetime | None = None) -> list[Path]:
    """Delete regular files directly under ``directory`` last modified before the retention window.

    Every file counts, whatever its name or origin. Subdirectories and symlinks
    are skipped. The first failed deletion propagates and stops the sweep.
    """
    if retention_days < 0:
        raise ValueError("retention_days must be >= 0")

    reference = now or datetime.now()
    cutoff = (reference - timedelta(days=retention_days)).timestamp()

    deleted: list[Path] = []
    for entry in sorted(directory.iterdir()):
        if entry.is_symlink() or not entry.is_file():
            continue
        if entry.stat().st_mtime >= cutoff:
            continue
        entry.unlink()
        logger.info("Deleted expired backup file %s", entry.name)
        deleted.append(entry)

    if not deleted:
        logger.info("No local backups older than %s days", retention_days)
    return deleted
