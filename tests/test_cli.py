"""CLI integration tests using Click's CliRunner."""

from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner, Result

from ahacache.cli import cli
from tests._fakes import FakeEmbeddingProvider, FakeRemoteSource, make_features

_ENV_VARS = ("AHA_COMPANY", "AHA_TOKEN", "MCP_TRANSPORT_MODE", "MCP_PORT", "MCP_HOST", "AHACACHE_DB_PATH", "AHACACHE_LOG_DIR")


@pytest.fixture
def invoke(tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> Any:
    """Run the CLI against a config file and database under tmp_path."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    def run(*args: str, obj: dict[str, Any] | None = None) -> Result:
        base = ["--config", str(tmp_path / "config.json"), "--db-path", str(tmp_path / "cache.db")]
        return cli_runner.invoke(cli, [*base, *args], obj=obj)

    return run


class TestInit:
    def test_creates_database(self, invoke: Any, tmp_path: Path) -> None:
        result = invoke("init")
        assert result.exit_code == 0, result.output
        assert (tmp_path / "cache.db").exists()
        assert "Initialized cache at" in result.output
        assert "Semantic search: enabled" in result.output
        assert "Next: ahacache init" in result.output

    def test_saves_credentials(self, invoke: Any, tmp_path: Path) -> None:
        result = invoke("init", "--company", "acme", "--token", "abcdef123456")
        assert result.exit_code == 0, result.output
        assert "Saved configuration to" in result.output
        assert "Next:" not in result.output
        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["company"] == "acme"
        assert base64.b64decode(saved["token"]).decode() == "abcdef123456"

    def test_keeps_existing_settings(self, invoke: Any, tmp_path: Path) -> None:
        invoke("init", "--company", "acme", "--token", "abcdef123456")
        invoke("init", "--company", "globex")
        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["company"] == "globex"
        assert base64.b64decode(saved["token"]).decode() == "abcdef123456"

    def test_rejects_invalid_company(self, invoke: Any, tmp_path: Path) -> None:
        result = invoke("init", "--company", "not a subdomain")
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        assert not (tmp_path / "config.json").exists()


class TestHealth:
    def test_text(self, invoke: Any) -> None:
        result = invoke("health")
        assert result.exit_code == 0, result.output
        assert "Connected: True" in result.output
        assert "Aha! company: not configured (token missing)" in result.output
        assert "features" in result.output

    def test_json(self, invoke: Any) -> None:
        result = invoke("health", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["store"]["connected"] is True
        assert data["server"]["token_configured"] is False
        assert {e["entity_type"] for e in data["entities"]} >= {"features", "epics"}


class TestConfigCommands:
    def test_get_all(self, invoke: Any) -> None:
        result = invoke("config", "get")
        assert result.exit_code == 0
        assert "max_concurrent_syncs=3" in result.output.splitlines()

    def test_get_one(self, invoke: Any) -> None:
        result = invoke("config", "get", "sync_batch_size")
        assert result.exit_code == 0
        assert result.output.strip() == "50"

    def test_get_missing(self, invoke: Any) -> None:
        result = invoke("config", "get", "nope")
        assert result.exit_code == 1
        assert "Setting not found: nope" in result.output

    def test_set(self, invoke: Any) -> None:
        result = invoke("config", "set", "max_concurrent_syncs", "4")
        assert result.exit_code == 0
        assert invoke("config", "get", "max_concurrent_syncs").output.strip() == "4"

    def test_set_rejects_bad_value(self, invoke: Any) -> None:
        result = invoke("config", "set", "max_concurrent_syncs", "lots")
        assert result.exit_code == 1
        assert "must be an integer" in result.output
        assert invoke("config", "get", "max_concurrent_syncs").output.strip() == "3"


class TestSyncCommand:
    def test_sync_to_completion(self, invoke: Any) -> None:
        remote = FakeRemoteSource({"features": make_features(12)})
        result = invoke("sync", "features", "--batch-size", "5", obj={"source": remote})
        assert result.exit_code == 0, result.output
        assert "completed (100%)" in result.stdout
        assert "Processed: 12/12" in result.stdout
        assert [page for _, page, _ in remote.calls] == [1, 2, 3]

    def test_json_output(self, invoke: Any) -> None:
        remote = FakeRemoteSource({"features": make_features(3)})
        result = invoke("sync", "features", "--json", "--updated-since", "2026-01-02T00:00:00Z", obj={"source": remote})
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert data["processed_count"] == 3
        assert remote.calls[0][2] == {"updated_since": "2026-01-02T00:00:00Z"}

    def test_reports_errors(self, invoke: Any) -> None:
        result = invoke("sync", "features", "widgets", obj={"source": FakeRemoteSource({"features": make_features(2)})})
        assert result.exit_code == 0, result.output
        assert "Errors: 1" in result.stdout
        assert "Unsupported entity type: widgets" in result.stdout

    def test_requires_credentials(self, invoke: Any) -> None:
        result = invoke("sync", "features")
        assert result.exit_code == 1
        assert "ahacache init" in result.output

    def test_rejects_bad_batch_size(self, invoke: Any) -> None:
        result = invoke("sync", "features", "--batch-size", "0", obj={"source": FakeRemoteSource()})
        assert result.exit_code == 1
        assert "batch_size must be >= 1" in result.output


class TestEmbedCommand:
    def test_embed_after_sync(self, invoke: Any, tmp_path: Path) -> None:
        invoke("sync", "features", obj={"source": FakeRemoteSource({"features": make_features(6)})})
        provider = FakeEmbeddingProvider()
        result = invoke("embed", "features", "--batch-size", "4", obj={"provider": provider})
        assert result.exit_code == 0, result.output
        assert "Processed: 6/6" in result.stdout
        assert [len(c) for c in provider.calls] == [4, 2]

    def test_nothing_cached(self, invoke: Any) -> None:
        result = invoke("embed", "epics", "--json", obj={"provider": FakeEmbeddingProvider()})
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["processed_count"] == 0


class TestCleanup:
    def test_removes_finished_jobs(self, invoke: Any) -> None:
        invoke("sync", "features", obj={"source": FakeRemoteSource({"features": make_features(1)})})
        result = invoke("cleanup", "--days", "0")
        assert result.exit_code == 0
        assert "Removed 1 sync jobs and 0 embedding jobs older than 0 days" in result.output

    def test_rejects_negative_days(self, invoke: Any) -> None:
        result = invoke("cleanup", "--days", "-1")
        assert result.exit_code == 2
