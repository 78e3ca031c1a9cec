from __future__ import annotations

from pathlib import Path
import argparse
import logging
import os

from .backup import BackupRunner, BackupStageError
from .config import ConfigurationError, load_config, read_config_sources

logger = logging.getLogger("mongo_backup_runner")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongo-backup-runner",
        description="Dump MongoDB to a gzip archive, upload it to AWS S3 or Azure Blob, and prune old local archives.",
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="dotenv or YAML file with backup settings (default: ~/mongo-backup.env when present). "
        "Environment variables take precedence.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="validate the configuration and exit without running mongodump or any upload",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default=_default_log_level(),
        help="logging verbosity (default: LOG_LEVEL or INFO)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format=_LOG_FORMAT)
    logger.setLevel(args.log_level)

    try:
        config = load_config(read_config_sources(args.config_file))
    except ConfigurationError as error:
        logger.error("%s", error)
        return EXIT_FAILURE

    if args.check:
        logger.info("Configuration is valid (scope=%s, target=%s)", config.mongo_scope, config.backup_target)
        return EXIT_SUCCESS

    try:
        result = BackupRunner(config).run()
    except BackupStageError as error:
        logger.error("%s", error)
        return EXIT_FAILURE

    logger.info(
        "Archive %s uploaded to %s; %d expired file(s) removed",
        result.archive_path.name,
        result.remote_reference,
        len(result.deleted_files),
    )
    return EXIT_SUCCESS


def _default_log_level() -> str:
    configured = os.getenv("LOG_LEVEL", "").strip().upper()
    return configured if configured in _LOG_LEVELS else "INFO"
