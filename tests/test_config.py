"""Tests for process configuration loading, validation, and persistence."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from ahacache.config import (
    config_summary,
    is_config_complete,
    load_config,
    read_config_file,
    save_config,
    validate_config,
)

VALID_TOKEN = "abcdef123456"


class TestLoadConfig:
    def test_defaults(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "missing.json", environ={})
        assert config["mode"] == "stdio"
        assert config["port"] == 3001
        assert config["db_path"].endswith("aha-mcp.db")
        assert "company" not in config

    def test_file_overrides_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"company": "acme", "port": 4000, "unknown": "ignored"}))
        config = load_config(path, environ={})
        assert config["company"] == "acme"
        assert config["port"] == 4000
        assert "unknown" not in config

    def test_environment_wins(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"company": "acme", "mode": "stdio"}))
        config = load_config(path, environ={"AHA_COMPANY": "globex", "MCP_TRANSPORT_MODE": "sse", "MCP_PORT": "8080"})
        assert config["company"] == "globex"
        assert config["mode"] == "sse"
        assert config["port"] == 8080

    def test_bad_env_port_ignored(self, tmp_path: Path) -> None:
        config = load_config(tmp_path / "none.json", environ={"MCP_PORT": "not-a-port"})
        assert config["port"] == 3001
        config = load_config(tmp_path / "none.json", environ={"MCP_PORT": "70000"})
        assert config["port"] == 3001

    def test_empty_env_value_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"company": "acme"}))
        assert load_config(path, environ={"AHA_COMPANY": ""})["company"] == "acme"

    def test_corrupt_file_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert read_config_file(path) == {}
        assert load_config(path, environ={})["mode"] == "stdio"

    def test_non_object_file_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        assert read_config_file(path) == {}

    def test_plain_text_token_accepted(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"token": "not*base64!"}))
        assert read_config_file(path)["token"] == "not*base64!"


class TestValidateConfig:
    def test_valid(self) -> None:
        assert validate_config({"company": "acme-corp", "token": VALID_TOKEN, "mode": "stdio"}) == []

    def test_bad_company(self) -> None:
        errors = validate_config({"company": "-acme", "mode": "stdio"})
        assert errors == ["Company must be a valid subdomain (alphanumeric and hyphens only)"]

    def test_short_token(self) -> None:
        assert "Token appears to be too short" in validate_config({"token": "abc"})

    def test_token_characters(self) -> None:
        assert "Token contains invalid characters" in validate_config({"token": "abcdef 123456"})

    def test_bad_mode(self) -> None:
        assert validate_config({"mode": "http"}) == ['Mode must be either "stdio" or "sse"']

    def test_sse_needs_port_and_host(self) -> None:
        errors = validate_config({"mode": "sse", "port": 0, "host": " "})
        assert "Port must be between 1 and 65535 for SSE mode" in errors
        assert "Host must be specified for SSE mode" in errors

    def test_complete(self) -> None:
        assert is_config_complete({"company": "acme", "token": VALID_TOKEN})
        assert not is_config_complete({"company": "acme"})


class TestSaveConfig:
    def test_token_obfuscated_on_disk(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "config.json"
        assert save_config({"company": "acme", "token": VALID_TOKEN}, path) == path
        on_disk = json.loads(path.read_text())
        assert on_disk["token"] != VALID_TOKEN
        assert base64.b64decode(on_disk["token"]).decode() == VALID_TOKEN
        assert read_config_file(path)["token"] == VALID_TOKEN

    def test_no_temp_file_left(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        save_config({"company": "acme"}, path)
        assert [p.name for p in tmp_path.iterdir()] == ["config.json"]

    def test_invalid_not_written(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        with pytest.raises(ValueError, match="Invalid configuration"):
            save_config({"company": "bad company!"}, path)
        assert not path.exists()


class TestConfigSummary:
    def test_token_never_shown(self, tmp_path: Path) -> None:
        summary = config_summary({"company": "acme", "token": VALID_TOKEN, "mode": "stdio"}, tmp_path / "c.json")
        assert VALID_TOKEN not in json.dumps(summary)
        assert summary["token_configured"] is True
        assert summary["is_complete"] is True
        assert summary["config_file"] == str(tmp_path / "c.json")

    def test_unconfigured(self) -> None:
        summary = config_summary({})
        assert summary["company"] == "not configured"
        assert summary["token_configured"] is False
