"""Sync orchestrator: mirrors remote entity types into the cache store.

A sync job walks each requested entity type page by page. Every record is
upserted and logged as an ``entity_processed`` history row; counters and the
per-type cursor are written after each page, so a paused job resumes on the
page it would have fetched next. Failures stay local: an unknown entity type
or a failing page is recorded and the job moves on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, ClassVar

from ahacache.core import CacheStore
from ahacache.db_base import JobFamily, MissingEntityIdError
from ahacache.entities import EntityKind, UnsupportedEntityTypeError, resolve_entity_kind
from ahacache.jobs import CancellationToken, JobRun, JobRunner, normalize_entity_types
from ahacache.remote import ListResult, RemoteEntitySource
from ahacache.types.jobs import HistoryEntry, JobProgress

logger = logging.getLogger(__name__)

# A page is fetched at most this many times before it is skipped.
FETCH_ATTEMPTS = 2
# An entity type is abandoned after this many skipped pages in a row.
MAX_CONSECUTIVE_SKIPS = 2


class SyncOrchestrator(JobRunner):
    family: JobFamily = "sync"
    action_prefix = "sync"
    cursor_defaults: ClassVar[dict[str, Any]] = {"page": 1, "done": False, "total": 0, "processed": 0, "failed": 0}

    def __init__(self, store: CacheStore, source: RemoteEntitySource) -> None:
        super().__init__(store)
        self.source = source

    # -- Public API ----------------------------------------------------------

    async def start_sync(
        self,
        entity_types: Iterable[str],
        *,
        batch_size: int | None = None,
        updated_since: str | None = None,
        concurrency: int = 1,
        filters: dict[str, Any] | None = None,
    ) -> str:
        """Create a sync job and schedule it. Returns the job id immediately.

        *batch_size* defaults to the ``sync_batch_size`` setting. *concurrency*
        bounds how many of this job's entity types are paged at once. When the
        process already runs ``max_concurrent_syncs`` jobs the new job waits
        with status ``pending``.
        """
        entities = normalize_entity_types(entity_types)
        settings = self.store.get_settings()
        batch_size = batch_size if batch_size is not None else settings.sync_batch_size
        if batch_size < 1:
            msg = f"batch_size must be >= 1, got {batch_size}"
            raise ValueError(msg)
        if concurrency < 1:
            msg = f"concurrency must be >= 1, got {concurrency}"
            raise ValueError(msg)
        configuration: dict[str, Any] = {
            "batch_size": batch_size,
            "updated_since": updated_since,
            "concurrency": concurrency,
            "filters": dict(filters or {}),
            "cursor": {},
        }
        job_id = self.store.create_job("sync", entities, configuration)
        logger.info("Sync job created", extra={"job_id": job_id, "entity_type": ",".join(entities)})
        self._submit(job_id)
        return job_id

    def pause_sync(self, job_id: str) -> bool:
        return self.pause(job_id)

    def resume_sync(self, job_id: str) -> bool:
        return self.resume(job_id)

    def stop_sync(self, job_id: str) -> bool:
        return self.stop(job_id)

    def get_sync_progress(self, job_id: str) -> JobProgress | None:
        return self.get_progress(job_id)

    def get_sync_history(self, job_id: str, limit: int = 100) -> list[HistoryEntry]:
        return self.get_history(job_id, limit)

    def get_active_syncs(self) -> list[JobProgress]:
        return self.get_active()

    def cleanup_old_sync_jobs(self, max_age_days: int = 7) -> int:
        return self.cleanup(max_age_days)

    # -- Processing loop -----------------------------------------------------

    async def _run(self, job_id: str, token: CancellationToken) -> None:
        run = self._open_run(job_id, token)
        limit = asyncio.Semaphore(int(run.configuration.get("concurrency") or 1))

        async def bounded(entity_type: str) -> None:
            async with limit:
                await self._sync_entity_type(run, entity_type)

        pending = list(run.entities)
        while pending:
            await asyncio.gather(*(bounded(t) for t in pending))
            if token.cancelled:
                break
            # A resume between the loops returning and here leaves types unfinished.
            pending = [t for t in run.entities if not self._type_state(run, t)["done"]]
        self._finish_run(run)

    async def _sync_entity_type(self, run: JobRun, entity_type: str) -> None:
        state = self._type_state(run, entity_type)
        if state["done"] or run.token.cancelled:
            return
        try:
            kind = resolve_entity_kind(entity_type)
        except UnsupportedEntityTypeError as exc:
            state["done"] = True
            self._record_error(run, entity_type, str(exc))
            self._save_progress(run, entity_type)
            return

        skipped_in_a_row = 0
        while not state["done"]:
            # Checkpoint: pause and stop are only honoured between pages.
            if run.token.cancelled:
                return
            page = int(state["page"])
            result = await self._fetch_page(run, kind, page)
            if result is None:
                skipped_in_a_row += 1
                if page == 1 or skipped_in_a_row >= MAX_CONSECUTIVE_SKIPS:
                    self._record_error(run, kind.name, f"Giving up on {kind.name} after page {page} failed")
                    self._finish_entity_type(run, kind, succeeded=False)
                    self._save_progress(run, kind.name)
                    return
                state["page"] = page + 1
                self._save_progress(run, kind.name)
                continue
            skipped_in_a_row = 0

            for record in result["records"]:
                try:
                    entity_id = kind.upsert(self.store, record)
                except MissingEntityIdError as exc:
                    state["failed"] += 1
                    self._record_error(run, kind.name, str(exc))
                    continue
                state["processed"] += 1
                run.processed += 1
                run.processed_this_run += 1
                self.store.append_history("sync", run.job_id, kind.name, "entity_processed", entity_id=entity_id)

            pagination = result["pagination"]
            state["total"] = max(int(pagination.get("total_records") or 0), int(state["processed"]))
            state["page"] = page + 1
            if not result["records"] or page >= int(pagination.get("total_pages") or 0):
                self._finish_entity_type(run, kind, succeeded=True)
            self._save_progress(run, kind.name)
            self._emit(
                "progress",
                run.job_id,
                {"entity_type": kind.name, "page": page, "processed": run.processed, "total": run.total},
            )

    async def _fetch_page(self, run: JobRun, kind: EntityKind, page: int) -> ListResult | None:
        """One page from the remote source, retried once. None if both attempts fail."""
        filters = dict(run.configuration.get("filters") or {})
        if run.configuration.get("updated_since"):
            filters["updated_since"] = run.configuration["updated_since"]
        page_size = int(run.configuration.get("batch_size") or 50)
        for attempt in range(1, FETCH_ATTEMPTS + 1):
            try:
                return await kind.fetch(self.source, filters=filters, page=page, page_size=page_size)
            except Exception as exc:
                message = f"Failed to fetch {kind.name} page {page} (attempt {attempt}): {exc}"
                logger.warning(message, extra={"job_id": run.job_id, "entity_type": kind.name})
                self._record_error(run, kind.name, message, page=page, attempt=attempt)
                self._save_progress(run, kind.name)
        return None

    def _finish_entity_type(self, run: JobRun, kind: EntityKind, *, succeeded: bool) -> None:
        state = self._type_state(run, kind.name)
        state["done"] = True
        self.store.record_entity_sync_status(
            kind.name,
            processed=int(state["processed"]),
            failed=int(state["failed"]),
            succeeded=succeeded,
        )
        self.store.append_history(
            "sync",
            run.job_id,
            kind.name,
            "entity_completed",
            details={"processed": state["processed"], "failed": state["failed"], "succeeded": succeeded},
        )
