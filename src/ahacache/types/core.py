"""Foundational TypedDicts for store query results."""

from __future__ import annotations

from typing import Any, NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class EntityRow(TypedDict, total=False):
    """One cached entity row.

    Only the columns every entity table has are declared; the denormalized
    filter columns differ per entity type and are present as extra keys.
    """

    id: str
    name: str | None
    description: str | None
    raw_data: dict[str, Any]
    synced_at: ISOTimestamp


class EntitySyncSummary(TypedDict):
    entity_type: str
    total_count: int
    recently_synced: int
    last_sync: ISOTimestamp | None


class HealthStatus(TypedDict):
    """Liveness snapshot returned by ``CacheStore.health_status()``."""

    connected: bool
    db_size: int
    total_tables: int
    sync_jobs_count: int
    embedding_jobs_count: int
    last_activity: ISOTimestamp | None
    vector_enabled: bool
    error: str | None


class SearchMatch(TypedDict):
    entity_type: str
    entity_id: str
    similarity: float
    text: str
    metadata: dict[str, Any]
    updated_at: ISOTimestamp


class EmbeddingRecord(TypedDict):
    """Row from ``embeddings`` with the vector and metadata decoded."""

    entity_type: str
    entity_id: str
    vector: list[float]
    text: str
    metadata: dict[str, Any]
    model: str
    dimensions: int
    created_at: ISOTimestamp
    updated_at: ISOTimestamp
