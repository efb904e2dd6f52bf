"""Hybrid read facade: serve from the cache, fall back to the remote API.

Each call is answered by exactly one source. The cache is tried first; only
when it has no matching rows (or the caller forces it) is the remote source
asked. Results are never merged across sources.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal, TypedDict

from ahacache.core import CacheStore
from ahacache.entities import resolve_entity_kind
from ahacache.remote import Pagination, RemoteEntitySource

logger = logging.getLogger(__name__)

ReadSource = Literal["cache", "remote"]


class HybridListResult(TypedDict):
    source: ReadSource
    entity_type: str
    records: list[dict[str, Any]]
    pagination: Pagination


class HybridGetResult(TypedDict):
    source: ReadSource
    entity_type: str
    record: dict[str, Any] | None


class HybridReader:
    def __init__(self, store: CacheStore, source: RemoteEntitySource | None = None) -> None:
        self.store = store
        self.source = source

    async def list(
        self,
        entity_type: str,
        filters: Mapping[str, Any] | None = None,
        *,
        page: int = 1,
        page_size: int = 20,
        force_remote: bool = False,
    ) -> HybridListResult:
        """List records of one type, from the cache when it has any.

        Cached rows are returned as their raw remote payloads so both paths
        produce the same record shape.
        """
        kind = resolve_entity_kind(entity_type)
        if page < 1 or page_size < 1:
            msg = f"page and page_size must be >= 1, got page={page} page_size={page_size}"
            raise ValueError(msg)
        filters = dict(filters or {})
        # Filters the cache has no column for can only be answered remotely.
        cacheable = set(filters) <= {"id", *kind.column_names}

        if not force_remote and cacheable:
            rows = self.store.list_entities(kind.name, filters, limit=page_size, offset=(page - 1) * page_size)
            if rows:
                total = self.store.count_entities(kind.name, filters)
                return {
                    "source": "cache",
                    "entity_type": kind.name,
                    "records": [row["raw_data"] or {"id": row["id"]} for row in rows],
                    "pagination": {
                        "page": page,
                        "page_size": page_size,
                        "total_pages": -(-total // page_size),
                        "total_records": total,
                    },
                }
            logger.debug("Cache miss for %s, reading from remote", kind.name)

        source = self._require_source()
        result = await source.list(kind.name, filters, page, page_size)
        return {
            "source": "remote",
            "entity_type": kind.name,
            "records": result["records"],
            "pagination": result["pagination"],
        }

    async def get(self, entity_type: str, entity_id: str, *, force_remote: bool = False) -> HybridGetResult:
        kind = resolve_entity_kind(entity_type)
        if not force_remote:
            row = self.store.get_entity(kind.name, entity_id)
            if row is not None:
                return {"source": "cache", "entity_type": kind.name, "record": row["raw_data"] or {"id": row["id"]}}
        source = self._require_source()
        record = await source.get(kind.name, entity_id)
        return {"source": "remote", "entity_type": kind.name, "record": record}

    def _require_source(self) -> RemoteEntitySource:
        if self.source is None:
            msg = "No remote source configured; only cached data is available"
            raise RuntimeError(msg)
        return self.source
