"""Tests for CacheStore: schema, entities, jobs, history, settings, health."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from ahacache.core import CacheStore
from ahacache.db_base import ConfigurationError, JobNotFoundError, MissingEntityIdError, StoreClosedError
from ahacache.db_meta import ServerSettings
from ahacache.db_schema import CURRENT_SCHEMA_VERSION
from ahacache.entities import UnsupportedEntityTypeError
from tests._fakes import make_features


class TestInitialize:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        s = CacheStore(tmp_path / "nested" / "dir" / "cache.db")
        s.initialize()
        assert (tmp_path / "nested" / "dir" / "cache.db").exists()
        s.close()

    def test_idempotent(self, store: CacheStore) -> None:
        store.set_config("sync_batch_size", 20)
        store.initialize()
        assert store.get_config("sync_batch_size") == "20"

    def test_reopen_keeps_settings(self, tmp_path: Path) -> None:
        path = tmp_path / "cache.db"
        with CacheStore(path) as first:
            first.initialize()
            first.set_config("max_concurrent_syncs", 5)
        second = CacheStore(path)
        second.initialize()
        assert second.get_settings().max_concurrent_syncs == 5
        second.close()

    def test_schema_version(self, store: CacheStore) -> None:
        assert store.get_schema_version() == CURRENT_SCHEMA_VERSION

    def test_wal_mode(self, store: CacheStore) -> None:
        assert store.conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_unwritable_path_is_configuration_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        s = CacheStore(blocker / "cache.db")
        with pytest.raises(ConfigurationError):
            s.initialize()

    def test_vector_capability_follows_setting(self, tmp_path: Path) -> None:
        path = tmp_path / "cache.db"
        with CacheStore(path) as first:
            first.initialize()
            assert first.vector_enabled is True
            first.set_config("enable_semantic_search", False)
        second = CacheStore(path)
        second.initialize()
        assert second.vector_enabled is False
        second.close()

    def test_vector_override(self, tmp_path: Path) -> None:
        s = CacheStore(tmp_path / "cache.db", semantic_search=False)
        s.initialize()
        assert s.vector_enabled is False
        s.close()


class TestEntities:
    def test_upsert_and_get(self, store: CacheStore) -> None:
        record = make_features(1)[0]
        assert store.upsert_entity("features", record) == "F001"
        row = store.get_entity("features", "F001")
        assert row is not None
        assert row["name"] == record["name"]
        assert row["description"] == "Improve ranking for feature 1"
        assert row["workflow_status"] == "In development"
        assert row["product_id"] == "P1"
        assert row["raw_data"] == record

    def test_singular_alias(self, store: CacheStore) -> None:
        store.upsert_entity("feature", make_features(1)[0])
        assert store.get_entity("features", "F001") is not None

    def test_upsert_is_idempotent(self, store: CacheStore) -> None:
        record = make_features(1)[0]
        store.upsert_entity("features", record)
        store.upsert_entity("features", record)
        assert store.count_entities("features") == 1

    def test_upsert_replaces(self, store: CacheStore) -> None:
        record = make_features(1)[0]
        store.upsert_entity("features", record)
        store.upsert_entity("features", {**record, "name": "Renamed"})
        row = store.get_entity("features", "F001")
        assert row is not None
        assert row["name"] == "Renamed"

    def test_missing_optional_fields_are_null(self, store: CacheStore) -> None:
        store.upsert_entity("epics", {"id": "E1"})
        row = store.get_entity("epics", "E1")
        assert row is not None
        assert row["name"] is None
        assert row["product_id"] is None

    def test_missing_id_raises(self, store: CacheStore) -> None:
        with pytest.raises(MissingEntityIdError):
            store.upsert_entity("features", {"name": "no id"})

    def test_unsupported_type_raises(self, store: CacheStore) -> None:
        with pytest.raises(UnsupportedEntityTypeError, match="Unsupported entity type: widgets"):
            store.upsert_entity("widgets", {"id": "W1"})

    def test_get_absent_returns_none(self, store: CacheStore) -> None:
        assert store.get_entity("features", "nope") is None

    def test_list_filters_and_paginates(self, store: CacheStore) -> None:
        for record in make_features(5) + make_features(3, product_id="P2", prefix="G"):
            store.upsert_entity("features", record)
        assert store.count_entities("features", {"product_id": "P2"}) == 3
        page = store.list_entities("features", {"product_id": "P1"}, limit=2, offset=0)
        assert len(page) == 2
        assert all(r["product_id"] == "P1" for r in page)
        rest = store.list_entities("features", {"product_id": "P1"}, limit=10, offset=2)
        assert len(rest) == 3

    def test_list_rejects_unknown_filter(self, store: CacheStore) -> None:
        with pytest.raises(ValueError, match="Cannot filter"):
            store.list_entities("features", {"color": "red"})

    def test_text_search(self, store: CacheStore) -> None:
        store.upsert_entity("features", {"id": "F1", "name": "Dark mode"})
        store.upsert_entity("features", {"id": "F2", "name": "Export", "description": {"body": "CSV and DARK theme"}})
        store.upsert_entity("features", {"id": "F3", "name": "Billing"})
        ids = {r["id"] for r in store.search_entities_text("features", "dark")}
        assert ids == {"F1", "F2"}

    def test_sync_summary(self, store: CacheStore) -> None:
        for record in make_features(4):
            store.upsert_entity("features", record)
        summary = {row["entity_type"]: row for row in store.entity_sync_summary()}
        assert summary["features"]["total_count"] == 4
        assert summary["features"]["recently_synced"] == 4
        assert summary["epics"]["total_count"] == 0
        assert summary["epics"]["last_sync"] is None

    def test_record_entity_sync_status(self, store: CacheStore) -> None:
        store.record_entity_sync_status("features", processed=10, failed=0, succeeded=True)
        store.record_entity_sync_status("features", processed=3, failed=2, succeeded=False)
        row = store.conn.execute("SELECT * FROM sync_status WHERE entity_type = 'features'").fetchone()
        assert row["total_records"] == 3
        assert row["failed_records"] == 2
        assert row["last_successful_sync_at"] is not None


class TestJobs:
    def test_create_job_shape(self, store: CacheStore) -> None:
        job_id = store.create_job("sync", ["features"], {"batch_size": 10})
        assert job_id.startswith("sync-")
        job = store.get_job("sync", job_id)
        assert job is not None
        assert job["status"] == "pending"
        assert job["entities"] == ["features"]
        assert job["progress"] == 0
        assert job["processed_count"] == 0
        assert job["configuration"] == {"batch_size": 10}

    def test_embedding_job_prefix(self, store: CacheStore) -> None:
        assert store.create_job("embedding", ["features"]).startswith("emb-")

    def test_ids_are_unique(self, store: CacheStore) -> None:
        ids = {store.create_job("sync", ["features"]) for _ in range(20)}
        assert len(ids) == 20

    def test_update_progress(self, store: CacheStore) -> None:
        job_id = store.create_job("sync", ["features"])
        assert store.update_job_progress("sync", job_id, status="running", progress=40, configuration={"cursor": {}})
        job = store.get_job("sync", job_id)
        assert job is not None
        assert job["status"] == "running"
        assert job["progress"] == 40
        assert job["configuration"] == {"cursor": {}}

    def test_update_unknown_job_returns_false(self, store: CacheStore) -> None:
        assert store.update_job_progress("sync", "sync-0-missing", progress=1) is False

    def test_update_rejects_unknown_field(self, store: CacheStore) -> None:
        job_id = store.create_job("sync", ["features"])
        with pytest.raises(ValueError, match="Cannot update"):
            store.update_job_progress("sync", job_id, id="other")

    def test_list_active(self, store: CacheStore) -> None:
        running = store.create_job("sync", ["features"])
        done = store.create_job("sync", ["epics"])
        store.update_job_progress("sync", running, status="running")
        store.update_job_progress("sync", done, status="completed")
        assert [j["id"] for j in store.list_active_jobs("sync")] == [running]

    def test_families_are_separate(self, store: CacheStore) -> None:
        job_id = store.create_job("embedding", ["features"])
        assert store.get_job("sync", job_id) is None
        assert store.list_active_jobs("sync") == []

    def test_cleanup_removes_old_terminal_jobs(self, store: CacheStore) -> None:
        old_done = store.create_job("sync", ["features"])
        old_running = store.create_job("sync", ["features"])
        fresh_done = store.create_job("sync", ["features"])
        store.update_job_progress("sync", old_done, status="completed")
        store.update_job_progress("sync", old_running, status="running")
        store.update_job_progress("sync", fresh_done, status="failed")
        store.append_history("sync", old_done, "features", "sync_start")
        stale = (datetime.now(UTC) - timedelta(days=10)).isoformat()
        store.conn.execute("UPDATE sync_jobs SET updated_at = ? WHERE id IN (?, ?)", (stale, old_done, old_running))
        store.conn.commit()

        assert store.cleanup_old_jobs("sync", 7) == 1
        assert store.get_job("sync", old_done) is None
        assert store.get_history("sync", old_done) == []
        assert store.get_job("sync", old_running) is not None
        assert store.get_job("sync", fresh_done) is not None

    def test_cleanup_rejects_negative_age(self, store: CacheStore) -> None:
        with pytest.raises(ValueError):
            store.cleanup_old_jobs("sync", -1)


class TestHistory:
    def test_newest_first(self, store: CacheStore) -> None:
        job_id = store.create_job("sync", ["features"])
        store.append_history("sync", job_id, "all", "sync_start")
        store.append_history("sync", job_id, "features", "entity_processed", entity_id="F1")
        store.append_history("sync", job_id, "features", "sync_error", details={"error": "boom"})
        history = store.get_history("sync", job_id)
        assert [h["action"] for h in history] == ["sync_error", "entity_processed", "sync_start"]
        assert history[0]["details"] == {"error": "boom"}
        assert history[1]["entity_id"] == "F1"

    def test_limit_and_action_filter(self, store: CacheStore) -> None:
        job_id = store.create_job("sync", ["features"])
        for i in range(5):
            store.append_history("sync", job_id, "features", "entity_processed", entity_id=f"F{i}")
        store.append_history("sync", job_id, "features", "sync_error")
        assert len(store.get_history("sync", job_id, limit=3)) == 3
        assert len(store.get_history("sync", job_id, action="sync_error")) == 1


class TestSettings:
    def test_defaults_seeded(self, store: CacheStore) -> None:
        assert store.get_settings() == ServerSettings()
        config = store.get_config()
        assert config["max_concurrent_syncs"] == "3"
        assert config["embedding_model"] == "simple-hash"

    def test_set_and_get(self, store: CacheStore) -> None:
        store.set_config("sync_batch_size", "25", "smaller pages")
        assert store.get_config("sync_batch_size") == "25"
        assert store.get_settings().sync_batch_size == 25

    def test_bool_values(self, store: CacheStore) -> None:
        store.set_config("enable_background_sync", False)
        assert store.get_config("enable_background_sync") == "false"
        assert store.get_settings().enable_background_sync is False

    def test_unknown_key_is_free_form(self, store: CacheStore) -> None:
        store.set_config("team_note", "hello")
        assert store.get_config("team_note") == "hello"

    def test_absent_key(self, store: CacheStore) -> None:
        assert store.get_config("nope") is None

    @pytest.mark.parametrize(
        ("key", "value"),
        [("max_concurrent_syncs", "many"), ("sync_batch_size", 0), ("enable_semantic_search", "maybe"), ("", "x")],
    )
    def test_rejects_malformed(self, store: CacheStore, key: str, value: object) -> None:
        with pytest.raises(ConfigurationError):
            store.set_config(key, value)

    def test_malformed_row_surfaces_on_read(self, store: CacheStore) -> None:
        store.conn.execute("UPDATE server_config SET value = 'lots' WHERE key = 'max_concurrent_syncs'")
        store.conn.commit()
        with pytest.raises(ConfigurationError, match="max_concurrent_syncs"):
            store.get_settings()


class TestHealthAndClose:
    def test_health_connected(self, store: CacheStore) -> None:
        store.create_job("sync", ["features"])
        health = store.health_status()
        assert health["connected"] is True
        assert health["error"] is None
        assert health["sync_jobs_count"] == 1
        assert health["total_tables"] > 0
        assert health["last_activity"] is not None

    def test_health_after_close_never_raises(self, tmp_path: Path) -> None:
        s = CacheStore(tmp_path / "cache.db")
        s.initialize()
        s.close()
        health = s.health_status()
        assert health["connected"] is False
        assert health["error"]

    def test_operations_after_close_raise(self, tmp_path: Path) -> None:
        s = CacheStore(tmp_path / "cache.db")
        s.initialize()
        job_id = s.create_job("sync", ["features"])
        s.close()
        assert s.closed
        with pytest.raises(StoreClosedError):
            s.get_entity("features", "F1")
        with pytest.raises(StoreClosedError):
            s.update_job_progress("sync", job_id, progress=5)

    def test_best_effort_writes_after_close(self, tmp_path: Path) -> None:
        s = CacheStore(tmp_path / "cache.db")
        s.initialize()
        job_id = s.create_job("sync", ["features"])
        s.close()
        assert s.update_job_progress("sync", job_id, best_effort=True, progress=5) is False
        s.append_history("sync", job_id, "all", "sync_failed", best_effort=True)

    def test_close_is_idempotent(self, store: CacheStore) -> None:
        store.close()
        store.close()
        assert store.closed

    def test_job_not_found_error_message(self) -> None:
        err = JobNotFoundError("sync-1-abc")
        assert str(err) == "Job not found: sync-1-abc"
        assert isinstance(err, KeyError)

    def test_sqlite_errors_propagate(self, store: CacheStore) -> None:
        store.conn.execute("DROP TABLE sync_jobs")
        with pytest.raises(sqlite3.OperationalError):
            store.create_job("sync", ["features"])
