"""Machinery shared by the sync and embedding orchestrators.

Both job families run the same lifecycle::

    pending -> running -> completed | failed
               running <-> paused

Each job runs as its own asyncio task. A per-job ``CancellationToken`` is
the only channel the public pause/stop calls use to reach a running loop,
and the loop only looks at it between pages. Started jobs over the
``max_concurrent_syncs`` cap wait in a FIFO queue with status ``pending``.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

from ahacache.core import CacheStore
from ahacache.db_base import JobFamily, JobNotFoundError, StoreClosedError, _now_iso
from ahacache.entities import UnsupportedEntityTypeError, resolve_entity_kind
from ahacache.types.jobs import HistoryEntry, JobEvent, JobProgress, JobRecord, OrchestratorHealth

logger = logging.getLogger(__name__)

JobListener = Callable[[JobEvent], Any]

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 100
RECENT_ERROR_LIMIT = 5


class CancellationToken:
    """Pause/stop request for one job, polled by the loop at page boundaries."""

    def __init__(self) -> None:
        self._paused = False
        self._stopped = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def cancelled(self) -> bool:
        """True when the loop should leave at its next checkpoint."""
        return self._paused or self._stopped

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def stop(self) -> None:
        self._stopped = True


def progress_percent(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, processed * 100 // total))


def estimate_completion(started: datetime, processed: int, remaining: int) -> str | None:
    """Projected finish time from the processing rate since *started*."""
    if processed <= 0 or remaining < 0:
        return None
    elapsed = (datetime.now(UTC) - started).total_seconds()
    if elapsed <= 0:
        return None
    rate = processed / elapsed
    return (datetime.now(UTC) + timedelta(seconds=remaining / rate)).isoformat()


@dataclass
class JobRun:
    """In-memory state of one job while its task is alive.

    ``configuration["cursor"]`` maps each entity type to its resume state and
    is persisted with every progress write.
    """

    job_id: str
    token: CancellationToken
    entities: list[str]
    configuration: dict[str, Any]
    processed: int
    errors: int
    last_error: str | None
    started: datetime = field(default_factory=lambda: datetime.now(UTC))
    processed_this_run: int = 0

    @property
    def cursor(self) -> dict[str, dict[str, Any]]:
        cursor: dict[str, dict[str, Any]] = self.configuration.setdefault("cursor", {})
        return cursor

    @property
    def total(self) -> int:
        known = sum(int(s.get("total") or 0) for s in self.cursor.values())
        return max(known, self.processed)


class JobRunner(abc.ABC):
    """Scheduling, lifecycle bookkeeping and notification for one job family.

    Subclasses set ``family``, ``action_prefix`` and ``cursor_defaults`` and
    implement ``_run``.
    """

    family: JobFamily
    action_prefix: str
    cursor_defaults: ClassVar[dict[str, Any]] = {}

    def __init__(self, store: CacheStore) -> None:
        self.store = store
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._queue: deque[str] = deque()
        self._listeners: list[JobListener] = []
        self._subscribers: list[asyncio.Queue[JobEvent]] = []

    # -- Scheduling ----------------------------------------------------------

    def _submit(self, job_id: str) -> None:
        self._tokens.setdefault(job_id, CancellationToken())
        self._queue.append(job_id)
        self._drain_queue()

    def _max_concurrent(self) -> int:
        try:
            return self.store.get_settings().max_concurrent_syncs
        except StoreClosedError:
            return 0

    def _drain_queue(self) -> None:
        limit = self._max_concurrent()
        while self._queue and len(self._tasks) < limit:
            job_id = self._queue.popleft()
            self._launch(job_id)

    def _launch(self, job_id: str) -> None:
        job = self.store.get_job(self.family, job_id)
        if job is None or job["status"] != "pending":
            return
        fields: dict[str, Any] = {"status": "running"}
        if job["started_at"] is None:
            fields["started_at"] = _now_iso()
        self.store.update_job_progress(self.family, job_id, **fields)
        token = self._tokens.setdefault(job_id, CancellationToken())
        self._tasks[job_id] = asyncio.create_task(self._run_guarded(job_id, token), name=f"{self.family}:{job_id}")

    async def _run_guarded(self, job_id: str, token: CancellationToken) -> None:
        try:
            await self._run(job_id, token)
        except StoreClosedError:
            logger.info("Job stopped writing: store closed", extra={"job_id": job_id})
        except Exception as exc:
            logger.error("Job failed", extra={"job_id": job_id, "error": str(exc)}, exc_info=True)
            self._fail(job_id, f"Unrecoverable error: {exc}")
        finally:
            self._tasks.pop(job_id, None)
            if token.stopped or not token.paused:
                self._tokens.pop(job_id, None)
            self._drain_queue()

    @abc.abstractmethod
    async def _run(self, job_id: str, token: CancellationToken) -> None:
        """Process the job from its persisted cursor, checking *token* between units of work."""

    def _fail(self, job_id: str, reason: str) -> None:
        self.store.update_job_progress(
            self.family,
            job_id,
            best_effort=True,
            status="failed",
            last_error=reason,
            completed_at=_now_iso(),
        )
        self.store.append_history(
            self.family,
            job_id,
            "all",
            f"{self.action_prefix}_failed",
            details={"error": reason},
            best_effort=True,
        )
        self._emit("error", job_id, {"error": reason, "fatal": True})

    def _require_job(self, job_id: str) -> JobRecord:
        job = self.store.get_job(self.family, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # -- Run bookkeeping -----------------------------------------------------

    def _open_run(self, job_id: str, token: CancellationToken) -> JobRun:
        job = self._require_job(job_id)
        run = JobRun(
            job_id=job_id,
            token=token,
            entities=job["entities"],
            configuration=job["configuration"],
            processed=job["processed_count"],
            errors=job["error_count"],
            last_error=job["last_error"],
        )
        if not run.cursor:
            self.store.append_history(
                self.family,
                job_id,
                "all",
                f"{self.action_prefix}_start",
                details={"entities": run.entities, "batch_size": run.configuration.get("batch_size")},
            )
            logger.info("Job started", extra={"job_id": job_id, "entity_type": ",".join(run.entities)})
            self._emit("started", job_id, {"entities": run.entities})
        return run

    def _type_state(self, run: JobRun, entity_type: str) -> dict[str, Any]:
        return run.cursor.setdefault(entity_type, dict(self.cursor_defaults))

    def _record_error(self, run: JobRun, entity_type: str, message: str, **details: Any) -> None:
        run.errors += 1
        run.last_error = message
        self.store.append_history(
            self.family,
            run.job_id,
            entity_type,
            f"{self.action_prefix}_error",
            details={"error": message, **details},
            best_effort=True,
        )
        self._emit("error", run.job_id, {"entity_type": entity_type, "error": message})

    def _save_progress(self, run: JobRun, entity_type: str | None) -> None:
        """Persist counters and cursor. Never touches ``status``."""
        total = run.total
        fields: dict[str, Any] = {
            "progress": progress_percent(run.processed, total),
            "total": total,
            "processed_count": run.processed,
            "error_count": run.errors,
            "configuration": run.configuration,
            "estimated_completion": estimate_completion(run.started, run.processed_this_run, total - run.processed),
        }
        if entity_type is not None:
            state = self._type_state(run, entity_type)
            fields["current_entity"] = entity_type
            fields["current_entity_progress"] = int(state.get("processed") or 0)
            fields["current_entity_total"] = int(state.get("total") or 0)
        if not run.token.stopped:
            # stop() already recorded the stop reason as last_error.
            fields["last_error"] = run.last_error
        self.store.update_job_progress(self.family, run.job_id, best_effort=True, **fields)

    def _finish_run(self, run: JobRun) -> None:
        """Mark the job completed, unless a pause or stop arrived first."""
        if run.token.cancelled:
            self._save_progress(run, None)
            return
        self.store.update_job_progress(
            self.family,
            run.job_id,
            best_effort=True,
            status="completed",
            progress=100,
            total=run.total,
            processed_count=run.processed,
            error_count=run.errors,
            current_entity=None,
            estimated_completion=None,
            completed_at=_now_iso(),
            configuration=run.configuration,
        )
        self.store.append_history(
            self.family,
            run.job_id,
            "all",
            f"{self.action_prefix}_complete",
            details={"processed": run.processed, "errors": run.errors},
            best_effort=True,
        )
        logger.info(
            "Job completed: %d processed, %d errors",
            run.processed,
            run.errors,
            extra={"job_id": run.job_id},
        )
        self._emit("completed", run.job_id, {"processed": run.processed, "errors": run.errors})

    # -- Lifecycle -----------------------------------------------------------

    def pause(self, job_id: str) -> bool:
        """Ask a pending or running job to pause. False if it cannot be paused."""
        job = self._require_job(job_id)
        if job["status"] not in ("pending", "running"):
            return False
        if job_id in self._queue:
            self._queue.remove(job_id)
        self._tokens.setdefault(job_id, CancellationToken()).pause()
        self.store.update_job_progress(self.family, job_id, status="paused")
        self.store.append_history(self.family, job_id, "all", f"{self.action_prefix}_paused")
        logger.info("Job paused", extra={"job_id": job_id})
        self._emit("paused", job_id, {})
        return True

    def resume(self, job_id: str) -> bool:
        """Resume a paused job from its persisted cursor. False if it is not paused."""
        job = self._require_job(job_id)
        if job["status"] != "paused":
            return False
        token = self._tokens.setdefault(job_id, CancellationToken())
        token.resume()
        self.store.append_history(self.family, job_id, "all", f"{self.action_prefix}_resumed")
        if job_id in self._tasks:
            # The loop has not reached a checkpoint yet; clearing the flag is enough.
            self.store.update_job_progress(self.family, job_id, status="running")
        else:
            self.store.update_job_progress(self.family, job_id, status="pending")
            self._submit(job_id)
        logger.info("Job resumed", extra={"job_id": job_id})
        self._emit("resumed", job_id, {})
        return True

    def stop(self, job_id: str, reason: str | None = None) -> bool:
        """Mark a job failed and signal its loop. False if it already finished.

        The loop notices at its next page boundary; no further page is
        written after that.
        """
        job = self._require_job(job_id)
        if job["status"] not in ("pending", "running", "paused"):
            return False
        reason = reason or f"{self.action_prefix.capitalize()} stopped by caller"
        if job_id in self._queue:
            self._queue.remove(job_id)
        token = self._tokens.get(job_id)
        if token is not None:
            token.stop()
        if job_id not in self._tasks:
            self._tokens.pop(job_id, None)
        self.store.update_job_progress(
            self.family,
            job_id,
            status="failed",
            last_error=reason,
            completed_at=_now_iso(),
        )
        self.store.append_history(
            self.family,
            job_id,
            "all",
            f"{self.action_prefix}_stopped",
            details={"reason": reason},
        )
        logger.info("Job stopped", extra={"job_id": job_id})
        self._emit("stopped", job_id, {"reason": reason})
        return True

    async def wait(self, job_id: str, timeout: float | None = None) -> JobRecord | None:
        """Wait for the job's task (if any) to finish and return the job row."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.store.get_job(self.family, job_id)

    async def shutdown(self) -> None:
        """Stop every job this runner owns and wait for their tasks to exit.

        Close the store only after this returns.
        """
        for job_id in [*self._queue, *self._tasks]:
            try:
                self.stop(job_id, f"{self.action_prefix.capitalize()} stopped: server shutting down")
            except (JobNotFoundError, StoreClosedError):
                logger.debug("Skipped stop for %s during shutdown", job_id)
        self._queue.clear()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Queries -------------------------------------------------------------

    def get_progress(self, job_id: str) -> JobProgress | None:
        job = self.store.get_job(self.family, job_id)
        if job is None:
            return None
        errors = [
            str(h["details"].get("error", ""))
            for h in self.store.get_history(self.family, job_id, limit=RECENT_ERROR_LIMIT, action=f"{self.action_prefix}_error")
        ]
        return {
            "job_id": job["id"],
            "status": job["status"],
            "entities": job["entities"],
            "progress": job["progress"],
            "total": job["total"],
            "current_entity": job["current_entity"],
            "current_entity_progress": job["current_entity_progress"],
            "current_entity_total": job["current_entity_total"],
            "processed_count": job["processed_count"],
            "error_count": job["error_count"],
            "last_error": job["last_error"],
            "started_at": job["started_at"],
            "completed_at": job["completed_at"],
            "estimated_completion": job["estimated_completion"],
            "errors": errors,
        }

    def get_history(self, job_id: str, limit: int = 100) -> list[HistoryEntry]:
        return self.store.get_history(self.family, job_id, limit=limit)

    def get_active(self) -> list[JobProgress]:
        active: list[JobProgress] = []
        for job in self.store.list_active_jobs(self.family):
            progress = self.get_progress(job["id"])
            if progress is not None:
                active.append(progress)
        return active

    def cleanup(self, max_age_days: int = 7) -> int:
        removed = self.store.cleanup_old_jobs(self.family, max_age_days)
        if removed:
            logger.info("Removed %d old %s jobs", removed, self.family)
        return removed

    @property
    def running_job_ids(self) -> list[str]:
        return list(self._tasks)

    @property
    def queued_job_ids(self) -> list[str]:
        return list(self._queue)

    def health_status(self) -> OrchestratorHealth:
        """Job counts and recent activity. Never raises."""
        health: OrchestratorHealth = {
            "active_jobs": 0,
            "running_jobs": len(self._tasks),
            "queued_jobs": len(self._queue),
            "jobs_started_today": 0,
            "last_activity": None,
            "errors": [],
        }
        try:
            midnight = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
            health["active_jobs"] = len(self.store.list_active_jobs(self.family))
            health["jobs_started_today"] = self.store.count_jobs_created_since(self.family, midnight.isoformat())
            health["last_activity"] = self.store.last_job_activity(self.family)  # type: ignore[typeddict-item]
        except Exception as exc:
            logger.warning("%s health check failed: %s", self.family, exc)
            health["errors"].append(str(exc))
        return health

    # -- Observers -----------------------------------------------------------

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue[JobEvent]:
        """Queue receiving this family's lifecycle events.

        Events that do not fit are dropped for that subscriber.
        """
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[JobEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: str, job_id: str, data: dict[str, Any]) -> None:
        payload: JobEvent = {"event": event, "job_id": job_id, "family": self.family, "data": data}
        for queue in self._subscribers:
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.debug("Dropped %s event for a full subscriber queue", event)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.warning("Job listener raised on %s event", event, exc_info=True)


def normalize_entity_types(entity_types: Iterable[str]) -> list[str]:
    """Canonical, de-duplicated type names in request order.

    Unknown names are kept as given so the job can report them.
    """
    seen: dict[str, None] = {}
    for name in entity_types:
        cleaned = str(name).strip()
        with contextlib.suppress(UnsupportedEntityTypeError):
            cleaned = resolve_entity_kind(cleaned).name
        if cleaned:
            seen.setdefault(cleaned, None)
    if not seen:
        msg = "At least one entity type is required"
        raise ValueError(msg)
    return list(seen)
