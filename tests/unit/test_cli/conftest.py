"""Shared fixtures for CLI command tests."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from validate_strategy.cli.main import cli


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep user and project config files out of CLI runs."""
    for key in list(os.environ):
        if key.startswith("VALIDATE_STRATEGY_"):
            monkeypatch.delenv(key)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.chdir(tmp_path)
    with patch.object(Path, "home", return_value=home):
        yield


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def cli_data_dir(tmp_path):
    return tmp_path / "cli-data"


@pytest.fixture
def invoke(cli_runner, cli_data_dir):
    """Run the CLI against the test data dir and parse its JSON envelope."""

    def _invoke(*args, expect_exit=0):
        result = cli_runner.invoke(cli, ["--data-dir", str(cli_data_dir), *args])
        assert result.exit_code == expect_exit, f"Unexpected output: {result.output}"
        return json.loads(result.output)

    return _invoke
