"""Shared utilities, error types, and Protocol for store mixins."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, Protocol

# Job families share one schema shape; the family selects the table pair.
JobFamily = Literal["sync", "embedding"]
JobStatus = Literal["pending", "running", "paused", "completed", "failed"]

ACTIVE_STATUSES: tuple[JobStatus, ...] = ("pending", "running", "paused")
TERMINAL_STATUSES: tuple[JobStatus, ...] = ("completed", "failed")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StoreClosedError(RuntimeError):
    """Raised by every store operation once the storage handle is released."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = db_path
        super().__init__(f"Cache store is closed: {db_path}" if db_path else "Cache store is closed")


class ConfigurationError(ValueError):
    """Bad storage path, failed DDL, or malformed server setting."""


class MissingEntityIdError(ValueError):
    """An entity record was offered for upsert without its remote id."""


class JobNotFoundError(KeyError):
    """A job id did not match any row in the job family's table."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class DBMixinProtocol(Protocol):
    """Shared attributes that store mixins access via self.

    Mixins inherit this Protocol so mypy can type-check ``self.conn``
    without ``type: ignore`` on every call. The implementation is
    provided by ``CacheStore`` at composition time.
    """

    db_path: Path
    _conn: sqlite3.Connection | None
    _closed: bool

    @property
    def conn(self) -> sqlite3.Connection: ...
