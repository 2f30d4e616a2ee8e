"""Tests for the command line entry point."""

import logging

import pytest

from mxexport import main as cli
from mxexport.config import settings as settings_module


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(settings_module, "_settings", None)


@pytest.mark.parametrize("env,value", [
    ("EXPORT_DESTINATION", "kafka"),
    ("ENVIRONMENT", "qa"),
])
def test_invalid_settings_exit_with_error(monkeypatch, caplog, env, value):
    monkeypatch.setenv(env, value)

    with caplog.at_level(logging.ERROR, logger="mxexport.main"):
        assert cli.main(["reset-checkpoint"]) == 1

    assert "mxexport reset-checkpoint failed" in caplog.text


def test_missing_destination_setting_exits_with_error(monkeypatch):
    monkeypatch.delenv("KINESIS_STREAM_NAME", raising=False)
    monkeypatch.setenv("EXPORT_DESTINATION", "kinesis-stream")
    monkeypatch.setattr(cli, "start_http_server", lambda port: None)

    assert cli.main(["run"]) == 1


def test_reset_checkpoint(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_URL", f"sqlite:///{tmp_path / 'checkpoints.db'}")
    assert cli.main(["reset-checkpoint"]) == 0
