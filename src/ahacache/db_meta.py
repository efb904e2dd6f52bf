"""MetaMixin: server settings rows and the store liveness snapshot.

All methods access ``self.conn`` via Python's MRO when composed into
``CacheStore``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, get_type_hints, overload

from ahacache.db_base import ConfigurationError, DBMixinProtocol, JobFamily, _now_iso
from ahacache.types.core import HealthStatus

logger = logging.getLogger(__name__)

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})


def _parse_bool(key: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    msg = f"Setting '{key}' must be a boolean, got {raw!r}"
    raise ConfigurationError(msg)


def _parse_int(key: str, raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        msg = f"Setting '{key}' must be an integer, got {raw!r}"
        raise ConfigurationError(msg) from None
    if value < 1:
        msg = f"Setting '{key}' must be >= 1, got {value}"
        raise ConfigurationError(msg)
    return value


@dataclass(frozen=True)
class ServerSettings:
    """Typed view of the ``server_config`` rows.

    Orchestrators take a snapshot at job start, so a later ``set_config``
    never changes a job that is already running.
    """

    sync_interval_minutes: int = 30
    max_concurrent_syncs: int = 3
    sync_batch_size: int = 50
    embedding_batch_size: int = 50
    cache_ttl_minutes: int = 60
    enable_semantic_search: bool = True
    embedding_model: str = "simple-hash"
    max_search_results: int = 100
    enable_background_sync: bool = True

    @classmethod
    def from_rows(cls, rows: dict[str, str]) -> ServerSettings:
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = rows.get(f.name)
            if raw is None:
                continue
            values[f.name] = _coerce_setting(f.name, raw)
        return cls(**values)


_SETTING_TYPES: dict[str, Any] = get_type_hints(ServerSettings)


def _coerce_setting(key: str, raw: str) -> Any:
    kind = _SETTING_TYPES.get(key, str)
    if kind is bool:
        return _parse_bool(key, raw)
    if kind is int:
        return _parse_int(key, raw)
    if not raw.strip():
        msg = f"Setting '{key}' cannot be empty"
        raise ConfigurationError(msg)
    return raw


class MetaMixin(DBMixinProtocol):
    """Settings and health. ``vector_enabled`` is resolved by ``CacheStore.initialize``."""

    if TYPE_CHECKING:
        vector_enabled: bool

        def last_job_activity(self, family: JobFamily) -> str | None: ...

    # -- Settings ------------------------------------------------------------

    @overload
    def get_config(self) -> dict[str, str]: ...
    @overload
    def get_config(self, key: str) -> str | None: ...

    def get_config(self, key: str | None = None) -> dict[str, str] | str | None:
        """One setting value, or every setting when *key* is omitted."""
        if key is None:
            rows = self.conn.execute("SELECT key, value FROM server_config ORDER BY key").fetchall()
            return {r["key"]: r["value"] for r in rows}
        row = self.conn.execute("SELECT value FROM server_config WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None else None

    def set_config(self, key: str, value: Any, description: str | None = None) -> None:
        """Write one setting. Known settings are type-checked before storing."""
        if not key or not key.strip():
            msg = "Setting key cannot be empty"
            raise ConfigurationError(msg)
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        if key in _SETTING_TYPES:
            _coerce_setting(key, text)
        conn = self.conn
        conn.execute(
            "INSERT INTO server_config (key, value, description, updated_at) VALUES (?, ?, coalesce(?, ''), ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "description = coalesce(?, server_config.description), updated_at = excluded.updated_at",
            (key, text, description, _now_iso(), description),
        )
        conn.commit()

    def get_settings(self) -> ServerSettings:
        return ServerSettings.from_rows(self.get_config())

    # -- Health --------------------------------------------------------------

    def health_status(self) -> HealthStatus:
        """Liveness snapshot. Never raises; failures yield ``connected=False``."""
        status: HealthStatus = {
            "connected": False,
            "db_size": 0,
            "total_tables": 0,
            "sync_jobs_count": 0,
            "embedding_jobs_count": 0,
            "last_activity": None,
            "vector_enabled": bool(getattr(self, "vector_enabled", False)),
            "error": None,
        }
        try:
            if self.db_path.exists():
                status["db_size"] = self.db_path.stat().st_size
            conn = self.conn
            conn.execute("SELECT 1").fetchone()
            status["connected"] = True
            status["total_tables"] = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type = 'table'").fetchone()[0]
            status["sync_jobs_count"] = conn.execute("SELECT COUNT(*) FROM sync_jobs").fetchone()[0]
            status["embedding_jobs_count"] = conn.execute("SELECT COUNT(*) FROM embedding_jobs").fetchone()[0]
            stamps = [s for s in (self.last_job_activity("sync"), self.last_job_activity("embedding")) if s]
            status["last_activity"] = max(stamps) if stamps else None  # type: ignore[typeddict-item]
        except Exception as exc:
            logger.warning("Cache health check failed: %s", exc)
            status["connected"] = False
            status["error"] = str(exc)
        return status
