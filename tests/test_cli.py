"""Tests for the command-line interface."""

import json
import logging
import time

import pytest

from synkhole.cli import create_parser, main
from synkhole.config import format_config, parse_config
from synkhole.errors import (
    EXIT_CONFIG_ERROR,
    EXIT_INCONSISTENT_STORAGE,
    EXIT_SUCCESS,
)
from synkhole.logger import LOGGER_NAME
from synkhole.retention import SECONDS_PER_DAY


@pytest.fixture
def config_path(tmp_path, test_config):
    path = tmp_path / "config.toml"
    path.write_text(format_config(test_config))
    return path


@pytest.fixture(autouse=True)
def cleanup_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


class TestParser:
    def test_subcommands(self):
        parser = create_parser()
        assert parser.parse_args(["run", "--json"]).json
        assert parser.parse_args(["list"]).command == "list"
        assert parser.parse_args(["-c", "/x.toml", "check"]).config.name == "x.toml"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_SUCCESS
        assert "usage" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert "synkhole" in capsys.readouterr().out


class TestRunCommand:
    def test_run_creates_snapshot(self, config_path, test_config, capsys):
        exit_code = main(["--config", str(config_path), "run"])

        assert exit_code == EXIT_SUCCESS
        assert "Backup completed" in capsys.readouterr().out
        assert len(list(test_config.settings.storage_root.iterdir())) == 1

    def test_run_json(self, config_path, capsys):
        exit_code = main(["--config", str(config_path), "run", "--json"])

        output = json.loads(capsys.readouterr().out)
        assert exit_code == EXIT_SUCCESS
        assert output["success"] is True
        assert output["summary"]["previous_id"] is None
        assert output["summary"]["problems"] == []

    def test_run_reports_inconsistent_storage(self, config_path, storage, capsys):
        (storage.path / "1.synkhole").mkdir()

        exit_code = main(["--config", str(config_path), "run"])

        assert exit_code == EXIT_INCONSISTENT_STORAGE
        assert "Backup failed" in capsys.readouterr().err

    def test_run_with_missing_config(self, tmp_path, capsys):
        exit_code = main(["--config", str(tmp_path / "missing.toml"), "run"])

        assert exit_code == EXIT_CONFIG_ERROR
        assert "not found" in capsys.readouterr().err


class TestCheckCommand:
    def test_consistent(self, config_path, storage, capsys):
        assert main(["--config", str(config_path), "check"]) == EXIT_SUCCESS
        assert "consistent" in capsys.readouterr().out

    def test_leftover_staged_snapshot(self, config_path, storage, capsys):
        (storage.path / "1.synkhole").mkdir()

        exit_code = main(["--config", str(config_path), "check"])

        assert exit_code == EXIT_INCONSISTENT_STORAGE
        assert "1.synkhole" in capsys.readouterr().err


class TestListCommand:
    def test_empty(self, config_path, capsys):
        assert main(["--config", str(config_path), "list"]) == EXIT_SUCCESS
        assert "No snapshots found" in capsys.readouterr().out

    def test_json_classification(self, config_path, storage, test_config, capsys):
        now = int(time.time())
        recent = now - SECONDS_PER_DAY
        old = now - (test_config.settings.max_age_days + 5) * SECONDS_PER_DAY
        for name in [str(recent), str(old), "latest", f"{now}.synkhole"]:
            (storage.path / name).mkdir()

        exit_code = main(["--config", str(config_path), "list", "--json"])

        rows = {row["name"]: row for row in json.loads(capsys.readouterr().out)}
        assert exit_code == EXIT_SUCCESS
        assert rows[str(recent)]["status"] == "current"
        assert rows[str(old)]["status"] == "outdated"
        assert rows["latest"]["status"] == "unparseable"
        assert rows["latest"]["timestamp"] is None
        assert rows[f"{now}.synkhole"]["status"] == "staged"

    def test_table(self, config_path, storage, capsys):
        (storage.path / "latest").mkdir()

        main(["--config", str(config_path), "list"])

        out = capsys.readouterr().out
        assert "latest" in out
        assert "Total: 1 snapshot(s), 0 outdated, 1 unparseable" in out


class TestInitCommand:
    def test_creates_config(self, tmp_path, capsys):
        path = tmp_path / "new" / "config.toml"

        assert main(["--config", str(path), "init"]) == EXIT_SUCCESS

        assert parse_config(path).settings.max_age_days == 30

    def test_refuses_to_overwrite(self, config_path, capsys):
        before = config_path.read_text()

        assert main(["--config", str(config_path), "init"]) == EXIT_CONFIG_ERROR
        assert config_path.read_text() == before

    def test_force_overwrites(self, config_path):
        assert main(["--config", str(config_path), "init", "--force"]) == EXIT_SUCCESS
        assert parse_config(config_path).settings.storage_dir.as_posix() == "/mnt/backups"
