"""TypedDicts for job rows, history rows, and orchestrator views."""

from __future__ import annotations

from typing import Any, Literal, TypedDict

from ahacache.types.core import ISOTimestamp

JobStatusName = Literal["pending", "running", "paused", "completed", "failed"]


class JobRecord(TypedDict):
    """Row from ``sync_jobs`` or ``embedding_jobs`` with JSON columns decoded."""

    id: str
    status: JobStatusName
    entities: list[str]
    progress: int
    total: int
    current_entity: str | None
    current_entity_progress: int
    current_entity_total: int
    processed_count: int
    error_count: int
    last_error: str | None
    created_at: ISOTimestamp
    started_at: ISOTimestamp | None
    updated_at: ISOTimestamp
    completed_at: ISOTimestamp | None
    estimated_completion: ISOTimestamp | None
    configuration: dict[str, Any]


class HistoryEntry(TypedDict):
    id: int
    job_id: str
    entity_type: str
    entity_id: str | None
    action: str
    details: dict[str, Any]
    timestamp: ISOTimestamp


class JobProgress(TypedDict):
    """Caller-facing progress view of one job."""

    job_id: str
    status: JobStatusName
    entities: list[str]
    progress: int
    total: int
    current_entity: str | None
    current_entity_progress: int
    current_entity_total: int
    processed_count: int
    error_count: int
    last_error: str | None
    started_at: ISOTimestamp | None
    completed_at: ISOTimestamp | None
    estimated_completion: ISOTimestamp | None
    errors: list[str]


class JobEvent(TypedDict):
    """Lifecycle notification delivered to observers."""

    event: str
    job_id: str
    family: str
    data: dict[str, Any]


class OrchestratorHealth(TypedDict):
    active_jobs: int
    running_jobs: int
    queued_jobs: int
    jobs_started_today: int
    last_activity: ISOTimestamp | None
    errors: list[str]
