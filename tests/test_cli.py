from __future__ import annotations

from pathlib import Path
import logging
import subprocess
from typing import Any
from unittest.mock import Mock

import pytest

from mongo_backup_runner import cli
from mongo_backup_runner import config as config_module

_CONFIG_NAMES = (
    "MONGO_URI",
    "MONGO_SCOPE",
    "MONGO_DB",
    "MONGO_USERNAME",
    "MONGO_PASSWORD",
    "MONGO_AUTH_DB",
    "BACKUP_TARGET",
    "AZURE_SAS_URI",
    "AWS_AUTH",
    "AWS_REGION",
    "AWS_S3_URI",
    "AWS_KEY",
    "AWS_SECRET",
    "FILE_PREFIX",
    "BACKUP_PATH",
    "BACKUP_RETENTION",
    "BACKUP_COMMAND_TIMEOUT",
    "MONGODUMP_BIN",
    "AWS_CLI_BIN",
    "AZCOPY_BIN",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_DEFAULT_REGION",
    "LOG_LEVEL",
)


def _successful_command(command: list[str], **_kwargs: Any) -> subprocess.CompletedProcess[str]:
    if Path(command[0]).name == "mongodump":
        archive_argument = next(argument for argument in command if argument.startswith("--archive="))
        Path(archive_argument.split("=", 1)[1]).write_bytes(b"archive")
    return subprocess.CompletedProcess(args=command, returncode=0, stdout="", stderr="")


@pytest.fixture
def run_command(monkeypatch: pytest.MonkeyPatch) -> Mock:
    fake = Mock(side_effect=_successful_command)
    monkeypatch.setattr("mongo_backup_runner.backup.subprocess.run", fake)
    monkeypatch.setattr("mongo_backup_runner.backup.shutil.which", lambda name: f"/usr/bin/{name}")
    return fake


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _CONFIG_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_FILE", tmp_path / "absent.env")


def _set_valid_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, **overrides: str) -> None:
    values = {
        "MONGO_URI": "mongodb://db.internal:27017",
        "MONGO_SCOPE": "all",
        "MONGO_USERNAME": "backup",
        "MONGO_PASSWORD": "s3cret",
        "MONGO_AUTH_DB": "admin",
        "BACKUP_TARGET": "aws",
        "AWS_AUTH": "ec2",
        "AWS_REGION": "eu-west-1",
        "AWS_S3_URI": "s3://backups/mongo/",
        "FILE_PREFIX": "nightly",
        "BACKUP_PATH": str(tmp_path / "archives"),
        "BACKUP_RETENTION": "7",
    }
    values.update(overrides)
    for name, value in values.items():
        monkeypatch.setenv(name, value)


def test_main_with_all_scope_aws_ec2_runs_dump_and_upload_and_exits_zero(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path)
    caplog.set_level(logging.INFO)

    exit_code = cli.main([])

    assert exit_code == 0
    programs = [Path(call.args[0][0]).name for call in run_command.call_args_list]
    assert programs == ["mongodump", "aws"]
    assert not any(argument.startswith("--db") for argument in run_command.call_args_list[0].args[0])
    assert "AWS_ACCESS_KEY_ID" not in run_command.call_args_list[1].kwargs["env"]
    messages = [record.getMessage() for record in caplog.records]
    assert "*** Backup Started ***" in messages
    assert "Cleaning up local backups older than 7 days" in messages
    assert "Backup Complete!" in messages


def test_main_with_specific_scope_and_no_database_exits_one_without_subprocess(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path, MONGO_SCOPE="specific")

    exit_code = cli.main([])

    assert exit_code == 1
    run_command.assert_not_called()
    assert not (tmp_path / "archives").exists()
    assert any("MONGO_DB" in record.getMessage() for record in caplog.records if record.levelno == logging.ERROR)


def test_main_with_missing_password_reports_variable_name(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path)
    monkeypatch.delenv("MONGO_PASSWORD")

    assert cli.main([]) == 1
    run_command.assert_not_called()
    assert any("MONGO_PASSWORD" in record.getMessage() for record in caplog.records)


def test_main_with_iam_auth_exports_credentials_only_to_upload_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path, AWS_AUTH="iam", AWS_KEY="AKIAEXAMPLE", AWS_SECRET="aws-secret")

    assert cli.main([]) == 0

    upload_environment = run_command.call_args_list[1].kwargs["env"]
    assert upload_environment["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert upload_environment["AWS_SECRET_ACCESS_KEY"] == "aws-secret"


def test_main_with_failed_dump_exits_one_and_skips_upload(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path)
    run_command.side_effect = lambda command, **_kwargs: subprocess.CompletedProcess(
        args=command,
        returncode=1,
        stdout="",
        stderr="Failed: error connecting to db server",
    )

    assert cli.main([]) == 1
    assert run_command.call_count == 1
    error_messages = [record.getMessage() for record in caplog.records if record.levelno == logging.ERROR]
    assert error_messages == ["dump stage failed: Failed: error connecting to db server"]


def test_main_with_check_flag_validates_without_running_commands(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
) -> None:
    _set_valid_environment(monkeypatch, tmp_path)

    assert cli.main(["--check"]) == 0
    run_command.assert_not_called()


def test_main_with_config_file_reads_values_from_dotenv(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    run_command: Mock,
) -> None:
    env_file = tmp_path / "mongo-backup.env"
    env_file.write_text(
        "\n".join(
            [
                "MONGO_URI=mongodb://db.internal:27017",
                "MONGO_SCOPE=specific",
                "MONGO_DB=orders",
                "MONGO_USERNAME=backup",
                "MONGO_PASSWORD=s3cret",
                "MONGO_AUTH_DB=admin",
                "BACKUP_TARGET=azure",
                'AZURE_SAS_URI="https://acct.blob.core.windows.net/mongo?sv=2024&sig=abc"',
                "FILE_PREFIX=orders",
                f"BACKUP_PATH={tmp_path / 'archives'}",
                "BACKUP_RETENTION=14",
            ]
        ),
        encoding="utf-8",
    )

    assert cli.main(["--config-file", str(env_file)]) == 0

    dump_command = run_command.call_args_list[0].args[0]
    upload_command = run_command.call_args_list[1].args[0]
    assert "--db=orders" in dump_command
    assert Path(upload_command[0]).name == "azcopy"
    assert upload_command[-1] == "https://acct.blob.core.windows.net/mongo?sv=2024&sig=abc"


def test_main_with_missing_config_file_exits_one(tmp_path: Path, run_command: Mock) -> None:
    assert cli.main(["--config-file", str(tmp_path / "nope.env")]) == 1
    run_command.assert_not_called()


def test_build_parser_defaults_log_level_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")

    args = cli.build_parser().parse_args([])

    assert args.log_level == "DEBUG"
    assert args.check is False
    assert args.config_file is None
