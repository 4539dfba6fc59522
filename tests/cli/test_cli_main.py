"""Tests for the agentrelay CLI commands."""

import yaml
from typer.testing import CliRunner

from agentrelay import __version__
from agentrelay.cli.main import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"agentrelay {__version__}" in result.output


def test_config_show_masks_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("AGENTRELAY_AUTH_API_KEY", raising=False)
    path = tmp_path / "relay.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "server": {"app_url": "https://relay.example.com"},
                "webhook": {"max_attempts": 4},
                "auth": {"api_key": "very-secret-value"},
            }
        )
    )

    result = runner.invoke(app, ["--config", str(path), "config", "show"])

    assert result.exit_code == 0
    assert "https://relay.example.com" in result.output
    assert "max_attempts: 4" in result.output
    assert "****alue" in result.output
    assert "very-secret-value" not in result.output


def test_config_show_missing_file(tmp_path):
    result = runner.invoke(app, ["--config", str(tmp_path / "missing.yaml"), "config", "show"])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_register_rejects_blank_name():
    result = runner.invoke(app, ["register", "   "])
    assert result.exit_code == 1
    assert "1-100 characters" in result.output


def test_register_prints_credentials_once():
    result = runner.invoke(app, ["register", "scout"])
    assert result.exit_code == 0, result.output
    assert "clankr_" in result.output
    assert "claim token" in result.output


def test_reap_with_nothing_overdue():
    result = runner.invoke(app, ["reap"])
    assert result.exit_code == 0, result.output
    assert "No overdue events" in result.output
