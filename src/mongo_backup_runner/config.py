from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
import logging
import os

from dotenv import dotenv_values
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / "mongo-backup.env"

SCOPE_ALL = "all"
SCOPE_SPECIFIC = "specific"
TARGET_AWS = "aws"
TARGET_AZURE = "azure"
AWS_AUTH_EC2 = "ec2"
AWS_AUTH_IAM = "iam"

_YAML_SUFFIXES = {".yaml", ".yml"}


class ConfigurationError(ValueError):
    """Raised when a configuration value is missing or invalid."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name = name


@dataclass(frozen=True)
class BackupConfig:
    mongo_uri: str
    mongo_scope: str
    mongo_username: str
    mongo_password: str = field(repr=False)
    mongo_auth_db: str
    backup_target: str
    file_prefix: str
    backup_path: Path
    retention_days: int
    mongo_db: str | None = None
    azure_sas_uri: str | None = field(default=None, repr=False)
    aws_auth: str | None = None
    aws_region: str | None = None
    aws_s3_uri: str | None = None
    aws_key: str | None = None
    aws_secret: str | None = field(default=None, repr=False)
    command_timeout_seconds: int | None = None
    mongodump_binary: str = "mongodump"
    aws_binary: str = "aws"
    azcopy_binary: str = "azcopy"


def read_config_sources(
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Merge the optional config file with the environment; the environment wins."""
    environment = os.environ if environ is None else environ
    values: dict[str, str] = {}

    if config_file is not None:
        if not config_file.is_file():
            raise ConfigurationError("config_file", f"Error: config file does not exist: {config_file}")
        values.update(_read_config_file(config_file))
    elif DEFAULT_CONFIG_FILE.is_file():
        values.update(_read_config_file(DEFAULT_CONFIG_FILE))

    values.update({key: value for key, value in environment.items() if isinstance(value, str)})
    return values


def _read_config_file(path: Path) -> dict[str, str]:
    logger.debug("Loading configuration from %s", path)
    if path.suffix.lower() in _YAML_SUFFIXES:
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as error:
            raise ConfigurationError("config_file", f"Error: {path} is not valid YAML: {error}") from error
        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("config_file", f"Error: {path} must contain a mapping of names to values")
        loaded: dict[str, str] = {}
        for key, value in parsed.items():
            if isinstance(value, (dict, list)):
                raise ConfigurationError(str(key), f"Error: {key} in {path} must be a scalar value")
            loaded[str(key)] = "" if value is None else str(value)
        return loaded

    return {key: value for key, value in dotenv_values(path).items() if value is not None}


def load_config(values: Mapping[str, str]) -> BackupConfig:
    """Validate configuration in order, stopping at the first missing or invalid value."""
    mongo_uri = _require(values, "MONGO_URI", "Error: you must set the MONGO_URI environment variable")

    mongo_scope = _require(values, "MONGO_SCOPE", "Error: you must set the MONGO_SCOPE environment variable")
    mongo_db: str | None = None
    if mongo_scope == SCOPE_ALL:
        logger.info("MongoDB backup scope set to ALL databases")
    elif mongo_scope == SCOPE_SPECIFIC:
        logger.info("MongoDB backup scope set to SPECIFIC")
        mongo_db = _require(
            values,
            "MONGO_DB",
            "Error: you must set the MONGO_DB environment variable when MONGO_SCOPE is set to SPECIFIC",
        )
        logger.info("The specific database to be backed up is %s", mongo_db)
    else:
        raise ConfigurationError(
            "MONGO_SCOPE",
            f"Error: MONGO_SCOPE must be '{SCOPE_ALL}' or '{SCOPE_SPECIFIC}', got {mongo_scope!r}",
        )

    auth_message = "Error: you must set all the MongoDB authentication environment variables ({name} is missing)"
    mongo_username = _require(values, "MONGO_USERNAME", auth_message.format(name="MONGO_USERNAME"))
    mongo_password = _require(values, "MONGO_PASSWORD", auth_message.format(name="MONGO_PASSWORD"))
    mongo_auth_db = _require(values, "MONGO_AUTH_DB", auth_message.format(name="MONGO_AUTH_DB"))

    backup_target = _require(values, "BACKUP_TARGET", "Error: you must set the BACKUP_TARGET environment variable")
    azure_sas_uri: str | None = None
    aws_auth = _optional(values, "AWS_AUTH")
    aws_region: str | None = None
    aws_s3_uri: str | None = None
    if backup_target == TARGET_AZURE:
        logger.info("Backup type is set to Azure Blob")
        azure_sas_uri = _require(values, "AZURE_SAS_URI", "Error: you must set AZURE_SAS_URI")
    elif backup_target == TARGET_AWS:
        logger.info("Backup type is set to AWS S3")
        aws_s3_uri = _require(values, "AWS_S3_URI", "Error: you must set the AWS_S3_URI")
        aws_region = _require(values, "AWS_REGION", "Error: you must set the AWS_REGION")
        logger.info("Setting AWS region to %s", aws_region)
        if aws_auth not in {AWS_AUTH_EC2, AWS_AUTH_IAM}:
            raise ConfigurationError(
                "AWS_AUTH",
                f"Error: AWS_AUTH must be '{AWS_AUTH_EC2}' or '{AWS_AUTH_IAM}' when BACKUP_TARGET is '{TARGET_AWS}'",
            )
    else:
        raise ConfigurationError(
            "BACKUP_TARGET",
            f"Error: BACKUP_TARGET must be '{TARGET_AWS}' or '{TARGET_AZURE}', got {backup_target!r}",
        )

    aws_key: str | None = None
    aws_secret: str | None = None
    if aws_auth == AWS_AUTH_IAM:
        aws_key = _require(values, "AWS_KEY", "Error: you must set AWS_KEY and AWS_SECRET (AWS_KEY is missing)")
        aws_secret = _require(values, "AWS_SECRET", "Error: you must set AWS_KEY and AWS_SECRET (AWS_SECRET is missing)")
        logger.info("Setting AWS credentials")

    file_prefix = _require(values, "FILE_PREFIX", "Error: you must set a FILE_PREFIX for the backup")
    backup_path = _require(values, "BACKUP_PATH", "Error: you must set a BACKUP_PATH for the backup")
    retention_raw = _require(values, "BACKUP_RETENTION", "Error: you must set a BACKUP_RETENTION for the backup")
    retention_days = _parse_non_negative_int("BACKUP_RETENTION", retention_raw)

    timeout_raw = _optional(values, "BACKUP_COMMAND_TIMEOUT")
    command_timeout_seconds: int | None = None
    if timeout_raw is not None:
        command_timeout_seconds = _parse_non_negative_int("BACKUP_COMMAND_TIMEOUT", timeout_raw)
        if command_timeout_seconds == 0:
            raise ConfigurationError("BACKUP_COMMAND_TIMEOUT", "Error: BACKUP_COMMAND_TIMEOUT must be greater than 0")

    return BackupConfig(
        mongo_uri=mongo_uri,
        mongo_scope=mongo_scope,
        mongo_username=mongo_username,
        mongo_password=mongo_password,
        mongo_auth_db=mongo_auth_db,
        backup_target=backup_target,
        file_prefix=file_prefix,
        backup_path=Path(backup_path).expanduser(),
        retention_days=retention_days,
        mongo_db=mongo_db,
        azure_sas_uri=azure_sas_uri,
        aws_auth=aws_auth,
        aws_region=aws_region,
        aws_s3_uri=aws_s3_uri,
        aws_key=aws_key,
        aws_secret=aws_secret,
        command_timeout_seconds=command_timeout_seconds,
        mongodump_binary=_optional(values, "MONGODUMP_BIN") or "mongodump",
        aws_binary=_optional(values, "AWS_CLI_BIN") or "aws",
        azcopy_binary=_optional(values, "AZCOPY_BIN") or "azcopy",
    )


def subprocess_environment(config: BackupConfig, base: Mapping[str, str] | None = None) -> dict[str, str]:
    environment = dict(os.environ if base is None else base)
    if config.backup_target == TARGET_AWS and config.aws_region:
        environment["AWS_DEFAULT_REGION"] = config.aws_region
    if config.aws_auth == AWS_AUTH_IAM and config.aws_key and config.aws_secret:
        environment["AWS_ACCESS_KEY_ID"] = config.aws_key
        environment["AWS_SECRET_ACCESS_KEY"] = config.aws_secret
    return environment


def _optional(values: Mapping[str, str], name: str) -> str | None:
    value = values.get(name)
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _require(values: Mapping[str, str], name: str, message: str) -> str:
    value = _optional(values, name)
    if value is None:
        raise ConfigurationError(name, message)
    return value


def _parse_non_negative_int(name: str, raw: str) -> int:
    try:
        parsed = int(raw)
    except ValueError as error:
        raise ConfigurationError(name, f"Error: {name} must be a whole number, got {raw!r}") from error
    if parsed < 0:
        raise ConfigurationError(name, f"Error: {name} must be >= 0, got {parsed}")
    return parsed
