"""Embedding orchestrator and embedding providers.

An embedding job has the same lifecycle as a sync job. Its "pages" are
batches of cached entities that have no vector for the provider's model;
each batch is sent to the provider in one call and the vectors are written
through the similarity index. A provider failure costs one batch, never the
job.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, ClassVar, Protocol

from ahacache.core import CacheStore
from ahacache.db_base import JobFamily
from ahacache.entities import UnsupportedEntityTypeError, resolve_entity_kind
from ahacache.jobs import CancellationToken, JobRun, JobRunner, normalize_entity_types
from ahacache.similarity import SimilarityIndex
from ahacache.types.core import EntityRow
from ahacache.types.jobs import HistoryEntry, JobProgress

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS = 384
_METADATA_FIELDS = ("name", "reference_num", "workflow_status", "product_id")


class EmbeddingProvider(Protocol):
    """Turns texts into fixed-length vectors. Failures are per call."""

    model: str
    dimensions: int

    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


class HashEmbeddingProvider:
    """Deterministic local vectors from character codes, L2-normalised.

    Needs no network or model download. Similar wording lands near each
    other, which is enough for a usable fallback and for tests.
    """

    model = "simple-hash"

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        if dimensions < 1:
            msg = f"dimensions must be >= 1, got {dimensions}"
            raise ValueError(msg)
        self.dimensions = dimensions

    def embed_text(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for i, word in enumerate(text.lower().split()):
            for j, char in enumerate(word):
                code = ord(char)
                vector[(code + i * j) % self.dimensions] += math.sin(code * 0.1) * 0.1
        magnitude = math.sqrt(sum(v * v for v in vector))
        if magnitude > 0:
            return [v / magnitude for v in vector]
        return vector

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_text(t) for t in texts]


def entity_text(row: Mapping[str, Any], text_fields: Sequence[str]) -> str:
    """Join the non-empty *text_fields* of a cached row (raw payload as fallback)."""
    raw = row.get("raw_data") or {}
    parts: list[str] = []
    for name in text_fields:
        value = row.get(name)
        if value is None and isinstance(raw, Mapping):
            value = raw.get(name)
            if isinstance(value, Mapping):
                value = value.get("body") or value.get("name")
        if value is not None and str(value).strip():
            parts.append(str(value).strip())
    return " ".join(parts)


class EmbeddingOrchestrator(JobRunner):
    family: JobFamily = "embedding"
    action_prefix = "embedding"
    cursor_defaults: ClassVar[dict[str, Any]] = {"after_id": None, "done": False, "total": None, "processed": 0, "failed": 0}

    def __init__(
        self,
        store: CacheStore,
        provider: EmbeddingProvider | None = None,
        index: SimilarityIndex | None = None,
    ) -> None:
        super().__init__(store)
        self.provider: EmbeddingProvider = provider or HashEmbeddingProvider()
        self.index = index or SimilarityIndex(store)

    # -- Public API ----------------------------------------------------------

    async def start_embedding(
        self,
        entity_types: Iterable[str],
        *,
        batch_size: int | None = None,
        text_fields: Sequence[str] | None = None,
    ) -> str:
        """Create an embedding job over cached entities lacking a vector.

        *text_fields* overrides the kind's default text columns (name and
        description for most kinds).
        """
        entities = normalize_entity_types(entity_types)
        settings = self.store.get_settings()
        batch_size = batch_size if batch_size is not None else settings.embedding_batch_size
        if batch_size < 1:
            msg = f"batch_size must be >= 1, got {batch_size}"
            raise ValueError(msg)
        configuration: dict[str, Any] = {
            "batch_size": batch_size,
            "model": self.provider.model,
            "dimensions": self.provider.dimensions,
            "text_fields": list(text_fields) if text_fields else None,
            "cursor": {},
        }
        job_id = self.store.create_job("embedding", entities, configuration)
        logger.info("Embedding job created", extra={"job_id": job_id, "entity_type": ",".join(entities)})
        self._submit(job_id)
        return job_id

    def pause_embedding(self, job_id: str) -> bool:
        return self.pause(job_id)

    def resume_embedding(self, job_id: str) -> bool:
        return self.resume(job_id)

    def stop_embedding(self, job_id: str) -> bool:
        return self.stop(job_id)

    def get_embedding_progress(self, job_id: str) -> JobProgress | None:
        return self.get_progress(job_id)

    def get_embedding_history(self, job_id: str, limit: int = 100) -> list[HistoryEntry]:
        return self.get_history(job_id, limit)

    def get_active_embeddings(self) -> list[JobProgress]:
        return self.get_active()

    def cleanup_old_embedding_jobs(self, max_age_days: int = 7) -> int:
        return self.cleanup(max_age_days)

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.provider.embed([text])
        return vectors[0]

    # -- Processing loop -----------------------------------------------------

    async def _run(self, job_id: str, token: CancellationToken) -> None:
        run = self._open_run(job_id, token)
        for entity_type in run.entities:
            if token.cancelled:
                break
            await self._embed_entity_type(run, entity_type)
        self._finish_run(run)

    async def _embed_entity_type(self, run: JobRun, entity_type: str) -> None:
        state = self._type_state(run, entity_type)
        if state["done"]:
            return
        try:
            kind = resolve_entity_kind(entity_type)
        except UnsupportedEntityTypeError as exc:
            state["done"] = True
            self._record_error(run, entity_type, str(exc))
            self._save_progress(run, entity_type)
            return

        model = str(run.configuration.get("model") or self.provider.model)
        batch_size = int(run.configuration.get("batch_size") or 50)
        text_fields = run.configuration.get("text_fields") or list(kind.text_columns)
        if state["total"] is None:
            state["total"] = self.store.count_entities_missing_embedding(kind.name, model)

        while True:
            # Checkpoint: pause and stop are only honoured between batches.
            if run.token.cancelled:
                return
            batch = self.store.entities_missing_embedding(kind.name, model, after_id=state["after_id"], limit=batch_size)
            if not batch:
                break
            await self._embed_batch(run, state, kind.name, batch, text_fields, model)
            state["after_id"] = batch[-1]["id"]
            self._save_progress(run, kind.name)
            self._emit(
                "progress",
                run.job_id,
                {"entity_type": kind.name, "processed": run.processed, "total": run.total},
            )
            # Give pause/stop callers a turn between batches.
            await asyncio.sleep(0)

        state["done"] = True
        self.store.append_history(
            "embedding",
            run.job_id,
            kind.name,
            "entity_completed",
            details={"processed": state["processed"], "failed": state["failed"]},
        )
        self._save_progress(run, kind.name)

    async def _embed_batch(
        self,
        run: JobRun,
        state: dict[str, Any],
        entity_type: str,
        batch: list[EntityRow],
        text_fields: Sequence[str],
        model: str,
    ) -> None:
        texts = [entity_text(row, text_fields) for row in batch]
        try:
            vectors = await self.provider.embed(texts)
            if len(vectors) != len(batch):
                msg = f"provider returned {len(vectors)} vectors for {len(batch)} texts"
                raise ValueError(msg)
        except Exception as exc:
            state["failed"] += len(batch)
            message = f"Embedding batch for {entity_type} failed: {exc}"
            logger.warning(message, extra={"job_id": run.job_id, "entity_type": entity_type})
            self._record_error(run, entity_type, message, batch_size=len(batch))
            return

        for row, text, vector in zip(batch, texts, vectors, strict=True):
            metadata = {k: row.get(k) for k in _METADATA_FIELDS if row.get(k) is not None}
            self.index.upsert(entity_type, row["id"], vector, text, metadata, model=model)
            self.store.append_history("embedding", run.job_id, entity_type, "entity_processed", entity_id=row["id"])
            state["processed"] += 1
            run.processed += 1
            run.processed_this_run += 1
