"""TypedDict return shapes shared by the store, orchestrators, and MCP tools."""

from ahacache.types.core import (
    EmbeddingRecord,
    EntityRow,
    EntitySyncSummary,
    HealthStatus,
    ISOTimestamp,
    SearchMatch,
)
from ahacache.types.jobs import HistoryEntry, JobEvent, JobProgress, JobRecord, OrchestratorHealth

__all__ = [
    "EmbeddingRecord",
    "EntityRow",
    "EntitySyncSummary",
    "HealthStatus",
    "HistoryEntry",
    "ISOTimestamp",
    "JobEvent",
    "JobProgress",
    "JobRecord",
    "OrchestratorHealth",
    "SearchMatch",
]
