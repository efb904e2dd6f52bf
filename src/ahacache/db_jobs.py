"""JobsMixin: sync/embedding job rows and their append-only history.

These are the only mutation points for job state. The orchestrators own
the state machine; this module only persists what they decide.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from ahacache.db_base import ACTIVE_STATUSES, TERMINAL_STATUSES, DBMixinProtocol, JobFamily, StoreClosedError, _now_iso
from ahacache.types.jobs import HistoryEntry, JobRecord

logger = logging.getLogger(__name__)

_JOB_TABLES: dict[str, tuple[str, str, str]] = {
    # family -> (jobs table, history table, id prefix)
    "sync": ("sync_jobs", "sync_history", "sync"),
    "embedding": ("embedding_jobs", "embedding_history", "emb"),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "total",
        "current_entity",
        "current_entity_progress",
        "current_entity_total",
        "processed_count",
        "error_count",
        "last_error",
        "started_at",
        "completed_at",
        "estimated_completion",
        "configuration",
    }
)


def _tables(family: JobFamily) -> tuple[str, str, str]:
    try:
        return _JOB_TABLES[family]
    except KeyError:
        msg = f"Unknown job family: {family!r}"
        raise ValueError(msg) from None


def _row_to_job(row: Any) -> JobRecord:
    data = dict(row)
    data["entities"] = json.loads(data["entities"]) if data.get("entities") else []
    data["configuration"] = json.loads(data["configuration"]) if data.get("configuration") else {}
    return cast(JobRecord, data)


class JobsMixin(DBMixinProtocol):
    """Job and history accessors for both job families."""

    # -- Jobs ----------------------------------------------------------------

    def create_job(
        self,
        family: JobFamily,
        entities: Iterable[str],
        configuration: dict[str, Any] | None = None,
    ) -> str:
        jobs_table, _, prefix = _tables(family)
        job_id = f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        now = _now_iso()
        conn = self.conn
        conn.execute(
            f"INSERT INTO {jobs_table} (id, status, entities, created_at, updated_at, configuration) "
            "VALUES (?, 'pending', ?, ?, ?, ?)",
            (job_id, json.dumps(list(entities)), now, now, json.dumps(configuration or {}, default=str)),
        )
        conn.commit()
        return job_id

    def get_job(self, family: JobFamily, job_id: str) -> JobRecord | None:
        jobs_table, _, _ = _tables(family)
        row = self.conn.execute(f"SELECT * FROM {jobs_table} WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def update_job_progress(self, family: JobFamily, job_id: str, *, best_effort: bool = False, **fields: Any) -> bool:
        """Apply *fields* to one job row and refresh ``updated_at``.

        With ``best_effort=True`` a closed store is tolerated: the update is
        dropped and False returned. Every other error propagates.
        """
        jobs_table, _, _ = _tables(family)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update job fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        sets: list[str] = []
        params: list[Any] = []
        for key, value in fields.items():
            if key == "configuration":
                value = json.dumps(value, default=str)
            sets.append(f"{key} = ?")
            params.append(value)
        sets.append("updated_at = ?")
        params.append(_now_iso())

        try:
            conn = self.conn
        except StoreClosedError:
            if best_effort:
                logger.debug("Dropped progress update for %s: store closed", job_id)
                return False
            raise
        cursor = conn.execute(f"UPDATE {jobs_table} SET {', '.join(sets)} WHERE id = ?", [*params, job_id])
        conn.commit()
        return cursor.rowcount > 0

    def list_active_jobs(self, family: JobFamily) -> list[JobRecord]:
        jobs_table, _, _ = _tables(family)
        ph = ",".join("?" * len(ACTIVE_STATUSES))
        rows = self.conn.execute(
            f"SELECT * FROM {jobs_table} WHERE status IN ({ph}) ORDER BY updated_at DESC, created_at DESC",
            ACTIVE_STATUSES,
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def list_jobs(self, family: JobFamily, *, limit: int = 50) -> list[JobRecord]:
        jobs_table, _, _ = _tables(family)
        rows = self.conn.execute(
            f"SELECT * FROM {jobs_table} ORDER BY created_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def count_jobs_created_since(self, family: JobFamily, since: str) -> int:
        jobs_table, _, _ = _tables(family)
        result: int = self.conn.execute(f"SELECT COUNT(*) FROM {jobs_table} WHERE created_at >= ?", (since,)).fetchone()[0]
        return result

    def last_job_activity(self, family: JobFamily) -> str | None:
        jobs_table, _, _ = _tables(family)
        result: str | None = self.conn.execute(f"SELECT MAX(updated_at) FROM {jobs_table}").fetchone()[0]
        return result

    def cleanup_old_jobs(self, family: JobFamily, max_age_days: int = 7) -> int:
        """Delete terminal jobs (and their history) not updated for *max_age_days*."""
        if max_age_days < 0:
            msg = f"max_age_days must be >= 0, got {max_age_days}"
            raise ValueError(msg)
        jobs_table, history_table, _ = _tables(family)
        cutoff = (datetime.now(UTC) - timedelta(days=max_age_days)).isoformat()
        ph = ",".join("?" * len(TERMINAL_STATUSES))
        conn = self.conn
        try:
            conn.execute(
                f"DELETE FROM {history_table} WHERE job_id IN ("
                f"  SELECT id FROM {jobs_table} WHERE status IN ({ph}) AND updated_at < ?"
                f")",
                (*TERMINAL_STATUSES, cutoff),
            )
            cursor = conn.execute(
                f"DELETE FROM {jobs_table} WHERE status IN ({ph}) AND updated_at < ?",
                (*TERMINAL_STATUSES, cutoff),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return cursor.rowcount

    # -- History -------------------------------------------------------------

    def append_history(
        self,
        family: JobFamily,
        job_id: str,
        entity_type: str,
        action: str,
        *,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
        best_effort: bool = False,
    ) -> None:
        _, history_table, _ = _tables(family)
        try:
            conn = self.conn
        except StoreClosedError:
            if best_effort:
                logger.debug("Dropped %s history row for %s: store closed", action, job_id)
                return
            raise
        conn.execute(
            f"INSERT INTO {history_table} (job_id, entity_type, entity_id, action, details, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            (job_id, entity_type, entity_id, action, json.dumps(details or {}, default=str), _now_iso()),
        )
        conn.commit()

    def get_history(
        self,
        family: JobFamily,
        job_id: str,
        *,
        limit: int = 100,
        action: str | None = None,
    ) -> list[HistoryEntry]:
        """History rows for one job, newest first."""
        _, history_table, _ = _tables(family)
        sql = f"SELECT * FROM {history_table} WHERE job_id = ?"
        params: list[Any] = [job_id]
        if action is not None:
            sql += " AND action = ?"
            params.append(action)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        entries: list[HistoryEntry] = []
        for r in rows:
            data = dict(r)
            data["details"] = json.loads(data["details"]) if data.get("details") else {}
            entries.append(cast(HistoryEntry, data))
        return entries
