"""In-memory stand-ins for the remote API and the embedding provider.

Importable by any conftest.py or test file in the test suite.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from ahacache.embedding import HashEmbeddingProvider
from ahacache.remote import ListResult, RemoteSourceError


def make_features(count: int, *, product_id: str = "P1", prefix: str = "F") -> list[dict[str, Any]]:
    """Feature payloads shaped like the Aha! list endpoint returns them."""
    return [
        {
            "id": f"{prefix}{i:03d}",
            "reference_num": f"APP-{i}",
            "name": f"Feature {i} search ranking",
            "description": {"body": f"Improve ranking for feature {i}"},
            "workflow_status": {"id": "WS1", "name": "In development"},
            "product": {"id": product_id},
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": f"2026-01-{(i % 28) + 1:02d}T00:00:00Z",
        }
        for i in range(1, count + 1)
    ]


class FakeRemoteSource:
    """In-memory Remote Entity Source.

    ``failures`` maps ``(entity_type, page)`` to how many times that page
    fails before succeeding. When ``gate`` is set, every list call waits on
    it, which lets tests pause or stop a job while a page is in flight.
    """

    def __init__(
        self,
        records: dict[str, list[dict[str, Any]]] | None = None,
        *,
        failures: dict[tuple[str, int], int] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.records = {k: list(v) for k, v in (records or {}).items()}
        self.failures = dict(failures or {})
        self.gate = gate
        self.calls: list[tuple[str, int, dict[str, Any]]] = []
        self.in_flight = 0

    async def list(self, entity_type: str, filters: dict[str, Any], page: int, page_size: int) -> ListResult:
        self.calls.append((entity_type, page, dict(filters)))
        self.in_flight += 1
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        key = (entity_type, page)
        if self.failures.get(key, 0) > 0:
            self.failures[key] -= 1
            msg = f"HTTP 500 for {entity_type} page {page}"
            raise RemoteSourceError(msg, status_code=500)
        records = self.records.get(entity_type, [])
        start = (page - 1) * page_size
        return {
            "records": [dict(r) for r in records[start : start + page_size]],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total_pages": -(-len(records) // page_size),
                "total_records": len(records),
            },
        }

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        for record in self.records.get(entity_type, []):
            if str(record["id"]) == entity_id:
                return dict(record)
        msg = f"{entity_type} {entity_id} not found"
        raise RemoteSourceError(msg, status_code=404)


class FakeEmbeddingProvider:
    """Hash vectors with optional failures (1-based call numbers) and a gate."""

    model = "fake-model"

    def __init__(
        self,
        dimensions: int = 16,
        *,
        fail_calls: Sequence[int] = (),
        gate: asyncio.Event | None = None,
    ) -> None:
        self.dimensions = dimensions
        self._hash = HashEmbeddingProvider(dimensions)
        self.fail_calls = set(fail_calls)
        self.gate = gate
        self.calls: list[list[str]] = []
        self.in_flight = 0

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if len(self.calls) in self.fail_calls:
            msg = "embedding service unavailable"
            raise RuntimeError(msg)
        return [self._hash.embed_text(t) for t in texts]
