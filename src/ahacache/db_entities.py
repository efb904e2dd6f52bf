"""EntitiesMixin: upsert and query of mirrored remote entities.

All methods access ``self.conn`` via Python's MRO when composed into
``CacheStore``. Table and column names always come from the entity
registry, never from caller input.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from ahacache.db_base import DBMixinProtocol, MissingEntityIdError, _now_iso
from ahacache.entities import ENTITY_KINDS, EntityKind, resolve_entity_kind
from ahacache.types.core import EntityRow, EntitySyncSummary

_MAX_LIST_LIMIT = 1000


def _row_to_entity(row: Any) -> EntityRow:
    data = dict(row)
    raw = data.get("raw_data")
    data["raw_data"] = json.loads(raw) if raw else {}
    return cast(EntityRow, data)


class EntitiesMixin(DBMixinProtocol):
    """Typed accessors for the per-entity-type tables."""

    def upsert_entity(self, entity_type: str, record: Mapping[str, Any]) -> str:
        """Insert or replace one remote record keyed by its remote id.

        Missing optional fields are stored as NULL. Returns the stored id.
        """
        kind = resolve_entity_kind(entity_type)
        entity_id = record.get("id") if isinstance(record, Mapping) else None
        if entity_id is None or str(entity_id).strip() == "":
            msg = f"Cannot cache {kind.singular} without an id"
            raise MissingEntityIdError(msg)
        entity_id = str(entity_id)

        values = kind.denormalize(record)
        columns = ["id", *values, "raw_data", "synced_at"]
        placeholders = ", ".join("?" * len(columns))
        params = [entity_id, *values.values(), json.dumps(record, default=str), _now_iso()]
        conn = self.conn
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO {kind.table} ({', '.join(columns)}) VALUES ({placeholders})",
                params,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return entity_id

    def get_entity(self, entity_type: str, entity_id: str) -> EntityRow | None:
        kind = resolve_entity_kind(entity_type)
        row = self.conn.execute(f"SELECT * FROM {kind.table} WHERE id = ?", (str(entity_id),)).fetchone()
        return _row_to_entity(row) if row is not None else None

    def list_entities(
        self,
        entity_type: str,
        filters: Mapping[str, Any] | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRow]:
        """Exact-match conjunction over denormalized columns, newest sync first."""
        kind = resolve_entity_kind(entity_type)
        where, params = self._build_filter(kind, filters)
        limit = max(0, min(int(limit), _MAX_LIST_LIMIT))
        offset = max(0, int(offset))
        rows = self.conn.execute(
            f"SELECT * FROM {kind.table}{where} ORDER BY synced_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [_row_to_entity(r) for r in rows]

    def count_entities(self, entity_type: str, filters: Mapping[str, Any] | None = None) -> int:
        kind = resolve_entity_kind(entity_type)
        where, params = self._build_filter(kind, filters)
        result: int = self.conn.execute(f"SELECT COUNT(*) FROM {kind.table}{where}", params).fetchone()[0]
        return result

    def search_entities_text(self, entity_type: str, query: str, *, limit: int = 10) -> list[EntityRow]:
        """Case-insensitive substring match over the kind's text columns."""
        kind = resolve_entity_kind(entity_type)
        needle = f"%{query.lower()}%"
        clause = " OR ".join(f"lower(coalesce({c}, '')) LIKE ?" for c in kind.text_columns)
        rows = self.conn.execute(
            f"SELECT * FROM {kind.table} WHERE {clause} ORDER BY synced_at DESC LIMIT ?",
            [*([needle] * len(kind.text_columns)), limit],
        ).fetchall()
        return [_row_to_entity(r) for r in rows]

    def entities_missing_embedding(
        self,
        entity_type: str,
        model: str,
        *,
        after_id: str | None = None,
        limit: int = 50,
    ) -> list[EntityRow]:
        """Cached entities with no vector stored for *model*, in id order.

        *after_id* is a keyset cursor: only ids sorting after it are returned.
        """
        kind = resolve_entity_kind(entity_type)
        rows = self.conn.execute(
            f"SELECT t.* FROM {kind.table} t "
            f"WHERE (? IS NULL OR t.id > ?) AND NOT EXISTS ("
            f"  SELECT 1 FROM embeddings e "
            f"  WHERE e.entity_type = ? AND e.entity_id = t.id AND e.model = ?"
            f") ORDER BY t.id LIMIT ?",
            (after_id, after_id, kind.name, model, limit),
        ).fetchall()
        return [_row_to_entity(r) for r in rows]

    def count_entities_missing_embedding(self, entity_type: str, model: str) -> int:
        kind = resolve_entity_kind(entity_type)
        result: int = self.conn.execute(
            f"SELECT COUNT(*) FROM {kind.table} t "
            f"WHERE NOT EXISTS ("
            f"  SELECT 1 FROM embeddings e "
            f"  WHERE e.entity_type = ? AND e.entity_id = t.id AND e.model = ?"
            f")",
            (kind.name, model),
        ).fetchone()[0]
        return result

    def entity_sync_summary(self) -> list[EntitySyncSummary]:
        """Per-table row counts, rows synced in the last day, and latest sync."""
        summary: list[EntitySyncSummary] = []
        for kind in ENTITY_KINDS.values():
            row = self.conn.execute(
                f"SELECT COUNT(*) AS total_count, "
                f"SUM(CASE WHEN synced_at > ? THEN 1 ELSE 0 END) AS recently_synced, "
                f"MAX(synced_at) AS last_sync FROM {kind.table}",
                (_one_day_ago_iso(),),
            ).fetchone()
            summary.append(
                {
                    "entity_type": kind.name,
                    "total_count": row["total_count"],
                    "recently_synced": row["recently_synced"] or 0,
                    "last_sync": row["last_sync"],
                }
            )
        return summary

    def record_entity_sync_status(self, entity_type: str, *, processed: int, failed: int, succeeded: bool) -> None:
        kind = resolve_entity_kind(entity_type)
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO sync_status (entity_type, last_sync_at, last_successful_sync_at, "
            "total_records, failed_records, updated_at) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(entity_type) DO UPDATE SET "
            "last_sync_at = excluded.last_sync_at, "
            "last_successful_sync_at = coalesce(excluded.last_successful_sync_at, sync_status.last_successful_sync_at), "
            "total_records = excluded.total_records, "
            "failed_records = excluded.failed_records, "
            "updated_at = excluded.updated_at",
            (kind.name, now, now if succeeded else None, processed, failed, now),
        )
        self.conn.commit()

    # -- Internal ------------------------------------------------------------

    @staticmethod
    def _build_filter(kind: EntityKind, filters: Mapping[str, Any] | None) -> tuple[str, list[Any]]:
        if not filters:
            return "", []
        allowed = {"id", *kind.column_names}
        clauses: list[str] = []
        params: list[Any] = []
        for key, value in filters.items():
            if key not in allowed:
                msg = f"Cannot filter {kind.name} on '{key}'. Filterable fields: {', '.join(sorted(allowed))}"
                raise ValueError(msg)
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params


def _one_day_ago_iso() -> str:
    return (datetime.now(UTC) - timedelta(days=1)).isoformat()
