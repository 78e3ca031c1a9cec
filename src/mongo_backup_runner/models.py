from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class BackupRunResult:
    archive_path: Path
    remote_reference: str
    started_at: str
    finished_at: str
    deleted_files: tuple[Path, ...] = ()
