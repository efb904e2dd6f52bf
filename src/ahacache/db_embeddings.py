"""EmbeddingsMixin: stored vectors keyed by (entity_type, entity_id)."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Sequence
from typing import Any, cast

from ahacache.db_base import DBMixinProtocol, _now_iso
from ahacache.entities import resolve_entity_kind
from ahacache.types.core import EmbeddingRecord


def _row_to_embedding(row: Any) -> EmbeddingRecord:
    data = dict(row)
    data.pop("id", None)
    data["vector"] = json.loads(data.pop("embedding_vector"))
    data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else {}
    return cast(EmbeddingRecord, data)


class EmbeddingsMixin(DBMixinProtocol):
    def store_embedding(
        self,
        entity_type: str,
        entity_id: str,
        vector: Sequence[float],
        *,
        text: str = "",
        metadata: dict[str, Any] | None = None,
        model: str = "simple-hash",
    ) -> None:
        """Insert or replace the vector for one entity.

        The vector's length is stored as ``dimensions``; ``created_at`` survives
        replacement.
        """
        kind = resolve_entity_kind(entity_type)
        values = [float(v) for v in vector]
        now = _now_iso()
        conn = self.conn
        conn.execute(
            "INSERT INTO embeddings "
            "(entity_type, entity_id, text, embedding_vector, metadata, model, dimensions, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(entity_type, entity_id) DO UPDATE SET "
            "text = excluded.text, embedding_vector = excluded.embedding_vector, "
            "metadata = excluded.metadata, model = excluded.model, "
            "dimensions = excluded.dimensions, updated_at = excluded.updated_at",
            (
                kind.name,
                str(entity_id),
                text,
                json.dumps(values),
                json.dumps(metadata or {}, default=str),
                model,
                len(values),
                now,
                now,
            ),
        )
        conn.commit()

    def get_embedding(self, entity_type: str, entity_id: str) -> EmbeddingRecord | None:
        kind = resolve_entity_kind(entity_type)
        row = self.conn.execute(
            "SELECT * FROM embeddings WHERE entity_type = ? AND entity_id = ?",
            (kind.name, str(entity_id)),
        ).fetchone()
        return _row_to_embedding(row) if row is not None else None

    def delete_embedding(self, entity_type: str, entity_id: str) -> bool:
        kind = resolve_entity_kind(entity_type)
        cursor = self.conn.execute(
            "DELETE FROM embeddings WHERE entity_type = ? AND entity_id = ?",
            (kind.name, str(entity_id)),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def iter_embeddings(self, entity_types: Iterable[str] | None = None) -> Iterator[EmbeddingRecord]:
        """Yield stored embeddings, optionally restricted to some entity types."""
        sql = "SELECT * FROM embeddings"
        params: list[str] = []
        if entity_types is not None:
            names = sorted({resolve_entity_kind(t).name for t in entity_types})
            if not names:
                return
            sql += f" WHERE entity_type IN ({','.join('?' * len(names))})"
            params.extend(names)
        for row in self.conn.execute(sql, params).fetchall():
            yield _row_to_embedding(row)

    def count_embeddings(self, entity_type: str | None = None) -> int:
        if entity_type is None:
            result: int = self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
            return result
        kind = resolve_entity_kind(entity_type)
        result = self.conn.execute("SELECT COUNT(*) FROM embeddings WHERE entity_type = ?", (kind.name,)).fetchone()[0]
        return result
