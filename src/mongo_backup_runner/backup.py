from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlsplit, urlunsplit
import logging
import os
import shutil
import subprocess
import tempfile

import yaml

from .config import SCOPE_SPECIFIC, TARGET_AWS, TARGET_AZURE, BackupConfig, subprocess_environment
from .models import BackupRunResult
from .retention import sweep_expired_files

logger = logging.getLogger(__name__)

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

RunCommand = Callable[..., "subprocess.CompletedProcess[str]"]


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class BackupRunner:
    """Runs one backup: dump to a gzip archive, upload it, then sweep expired local files.

    Every stage blocks until its subprocess exits. The first failing stage raises
    ``BackupStageError`` and the later stages never run.
    """

    def __init__(
        self,
        config: BackupConfig,
        *,
        run_command: RunCommand | None = None,
        clock: Callable[[], datetime] | None = None,
        base_environment: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self._run_command = run_command or subprocess.run
        self._clock = clock or datetime.now
        self._environment = subprocess_environment(config, base_environment)

    def run(self) -> BackupRunResult:
        started_at = _utc_now_iso()
        logger.info("*** Backup Started ***")

        archive_path = self.config.backup_path / archive_name(self.config.file_prefix, self._clock())
        self._dump_archive(archive_path=archive_path)
        remote_reference = self._upload_archive(archive_path=archive_path)

        logger.info("Cleaning up local backups older than %s days", self.config.retention_days)
        deleted_files = self._sweep_expired_archives()

        logger.info("Backup Complete!")
        return BackupRunResult(
            archive_path=archive_path,
            remote_reference=remote_reference,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            deleted_files=tuple(deleted_files),
        )

    def _dump_archive(self, *, archive_path: Path) -> None:
        if self.config.mongo_scope == SCOPE_SPECIFIC:
            logger.info("Backing up the %s database", self.config.mongo_db)
            logger.info("Dumping the %s database to a compressed archive", self.config.mongo_db)
        else:
            logger.info("Backing up ALL databases")
            logger.info("Dumping ALL databases to a compressed archive")

        generated_config_path: Path | None = None
        try:
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            binary = _require_binary(self.config.mongodump_binary)
            generated_config_path = _write_mongodump_config(password=self.config.mongo_password)
            self._run_checked(
                build_dump_command(self.config, binary=binary, archive_path=archive_path, config_path=generated_config_path)
            )
            _validate_archive(archive_path)
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="dump", reason=_error_message(error)) from error
        finally:
            if generated_config_path is not None:
                generated_config_path.unlink(missing_ok=True)

        logger.info("Done! Archive written to %s (%s bytes)", archive_path, archive_path.stat().st_size)

    def _upload_archive(self, *, archive_path: Path) -> str:
        try:
            if self.config.backup_target == TARGET_AWS:
                logger.info("Using AWS S3 as the backup target")
                binary = _require_binary(self.config.aws_binary)
                remote_reference = f"{self.config.aws_s3_uri}{archive_path.name}"
                self._run_checked([binary, "s3", "cp", str(archive_path), remote_reference])
            elif self.config.backup_target == TARGET_AZURE:
                logger.info("Using Azure Blob as the backup target")
                binary = _require_binary(self.config.azcopy_binary)
                sas_uri = self.config.azure_sas_uri or ""
                self._run_checked([binary, "cp", str(archive_path), sas_uri])
                remote_reference = _redacted_blob_reference(sas_uri, archive_path.name)
            else:
                raise RuntimeError(f"unsupported backup target: {self.config.backup_target}")
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="upload", reason=_error_message(error)) from error

        logger.info("Done! Uploaded to %s", remote_reference)
        return remote_reference

    def _sweep_expired_archives(self) -> list[Path]:
        try:
            return sweep_expired_files(self.config.backup_path, self.config.retention_days, now=self._clock())
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="cleanup", reason=_error_message(error)) from error

    def _run_checked(self, command: list[str]) -> None:
        logger.debug("Running %s", command[0])
        try:
            completed = self._run_command(
                command,
                check=False,
                capture_output=True,
                text=True,
                env=self._environment,
                timeout=self.config.command_timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise RuntimeError(
                f"{Path(command[0]).name} did not finish within {self.config.command_timeout_seconds} seconds"
            ) from error

        program = Path(command[0]).name
        stderr = (completed.stderr or "").strip()
        stdout = (completed.stdout or "").strip()
        if completed.returncode != 0:
            raise RuntimeError(stderr or stdout or f"{program} exited with status {completed.returncode}")
        if stderr:
            logger.debug("%s output: %s", program, stderr)


def archive_name(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now.strftime(ARCHIVE_TIMESTAMP_FORMAT)}.gz"


def build_dump_command(config: BackupConfig, *, binary: str, archive_path: Path, config_path: Path) -> list[str]:
    command = [
        binary,
        config.mongo_uri,
        f"--username={config.mongo_username}",
        f"--authenticationDatabase={config.mongo_auth_db}",
    ]
    if config.mongo_scope == SCOPE_SPECIFIC:
        command.append(f"--db={config.mongo_db}")
    command.extend(
        [
            f"--archive={archive_path}",
            "--gzip",
            f"--config={config_path}",
        ]
    )
    return command


def _write_mongodump_config(*, password: str) -> Path:
    # The password travels only through this file, never on the argument vector.
    content: dict[str, Any] = {"password": password}
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        yaml.safe_dump(content, handle, default_flow_style=False)
        config_path = Path(handle.name)

    os.chmod(config_path, 0o600)
    return config_path


def _require_binary(name: str) -> str:
    resolved = shutil.which(name)
    if resolved is None:
        raise RuntimeError(f"{name} is required for backups but was not found in PATH")
    return resolved


def _validate_archive(archive_path: Path) -> None:
    if not archive_path.exists():
        raise RuntimeError(f"archive not found at {archive_path}")
    if archive_path.stat().st_size <= 0:
        raise RuntimeError(f"archive is empty at {archive_path}")


def _redacted_blob_reference(sas_uri: str, filename: str) -> str:
    parts = urlsplit(sas_uri)
    path = f"{parts.path.rstrip('/')}/{filename}"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
