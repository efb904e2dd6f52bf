"""Cache store: the single owner of the local SQLite mirror.

Entity tables, sync/embedding job tables, job history, stored vectors and
server settings all live in one database file. The orchestrators, the hybrid
reader and the MCP/CLI surfaces are all handed the same explicitly
constructed ``CacheStore``; nothing here is a process-wide singleton.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from ahacache.db_base import ConfigurationError, StoreClosedError, _now_iso
from ahacache.db_embeddings import EmbeddingsMixin
from ahacache.db_entities import EntitiesMixin
from ahacache.db_jobs import JobsMixin
from ahacache.db_meta import MetaMixin
from ahacache.db_schema import CURRENT_SCHEMA_VERSION, DEFAULT_SETTINGS, ENTITY_SCHEMA_SQL, SCHEMA_SQL

if TYPE_CHECKING:
    from ahacache.config import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data") / "aha-mcp.db"


class CacheStore(EntitiesMixin, JobsMixin, EmbeddingsMixin, MetaMixin):
    """SQLite-backed cache with typed accessors and no business logic.

    The connection is opened lazily. After ``close()`` every accessor raises
    ``StoreClosedError``; callers doing shutdown bookkeeping catch exactly
    that and nothing else.
    """

    def __init__(
        self,
        db_path: str | Path = DEFAULT_DB_PATH,
        *,
        semantic_search: bool | None = None,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self._initialized = False
        self._check_same_thread = check_same_thread
        self._semantic_search_override = semantic_search
        self.vector_enabled = False

    @classmethod
    def from_config(cls, config: ServerConfig) -> CacheStore:
        """Create and initialize a store at the configured ``db_path``."""
        store = cls(config.get("db_path") or DEFAULT_DB_PATH)
        store.initialize()
        return store

    def __enter__(self) -> CacheStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreClosedError(self.db_path)
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create the file, apply the additive schema, seed default settings.

        Safe to call repeatedly; calls after the first success are no-ops.
        An unwritable path or failing DDL raises ``ConfigurationError``.
        """
        if self._initialized:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self.conn
            conn.executescript(SCHEMA_SQL)
            conn.executescript(ENTITY_SCHEMA_SQL)
            now = _now_iso()
            conn.executemany(
                "INSERT OR IGNORE INTO server_config (key, value, description, updated_at) VALUES (?, ?, ?, ?)",
                [(key, value, description, now) for key, value, description in DEFAULT_SETTINGS],
            )
            if self.get_schema_version() < CURRENT_SCHEMA_VERSION:
                conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            self._discard_connection()
            msg = f"Cannot initialize cache store at {self.db_path}: {exc}"
            raise ConfigurationError(msg) from exc

        self.vector_enabled = self._resolve_vector_capability()
        self._initialized = True
        logger.info(
            "Cache store initialized",
            extra={"db_path": str(self.db_path), "vector_enabled": self.vector_enabled},
        )

    def get_schema_version(self) -> int:
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        """Release the storage handle. Further operations raise ``StoreClosedError``."""
        self._closed = True
        self._discard_connection()

    # -- Internal ------------------------------------------------------------

    def _discard_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _resolve_vector_capability(self) -> bool:
        # Resolved once; the similarity index reads the flag and never probes again.
        if self._semantic_search_override is not None:
            return self._semantic_search_override
        return self.get_settings().enable_semantic_search
