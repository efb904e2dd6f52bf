"""Similarity index over stored entity vectors.

Vectors are stored as JSON text in the ``embeddings`` table and ranked in
Python by cosine similarity. Whether the index is usable is decided once, at
store initialization (``CacheStore.vector_enabled``); when it is off every
search returns no matches.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from ahacache.types.core import SearchMatch

if TYPE_CHECKING:
    from ahacache.core import CacheStore

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_THRESHOLD = 0.7


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|), or 0.0 for a zero vector or a dimension mismatch."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    # Rounding can push identical vectors a hair past 1.0.
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


class SimilarityIndex:
    def __init__(self, store: CacheStore) -> None:
        self.store = store

    @property
    def enabled(self) -> bool:
        return self.store.vector_enabled

    def upsert(
        self,
        entity_type: str,
        entity_id: str,
        vector: Sequence[float],
        text: str = "",
        metadata: dict[str, Any] | None = None,
        *,
        model: str = "simple-hash",
    ) -> None:
        """Store *vector* for the entity, replacing any previous one."""
        if not vector:
            msg = f"Cannot index an empty vector for {entity_type}/{entity_id}"
            raise ValueError(msg)
        self.store.store_embedding(entity_type, entity_id, vector, text=text, metadata=metadata, model=model)

    def get(self, entity_type: str, entity_id: str) -> list[float] | None:
        record = self.store.get_embedding(entity_type, entity_id)
        return record["vector"] if record is not None else None

    def delete(self, entity_type: str, entity_id: str) -> bool:
        return self.store.delete_embedding(entity_type, entity_id)

    def search(
        self,
        query_vector: Sequence[float],
        entity_types: Iterable[str] | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> list[SearchMatch]:
        """Rank stored vectors against *query_vector*.

        Keeps matches with similarity >= *threshold*, sorted by similarity
        (highest first) and then by most recently updated, at most *limit*.
        Candidates of a different dimensionality are never returned, whatever
        the threshold.
        """
        if not self.enabled or limit <= 0:
            return []
        query = [float(v) for v in query_vector]
        matches: list[SearchMatch] = []
        skipped = 0
        for record in self.store.iter_embeddings(entity_types):
            if record["dimensions"] != len(query):
                skipped += 1
                continue
            score = cosine_similarity(query, record["vector"])
            if score < threshold:
                continue
            matches.append(
                {
                    "entity_type": record["entity_type"],
                    "entity_id": record["entity_id"],
                    "similarity": score,
                    "text": record["text"],
                    "metadata": record["metadata"],
                    "updated_at": record["updated_at"],
                }
            )
        if skipped:
            logger.debug("Skipped %d stored vectors with mismatched dimensions", skipped)
        matches.sort(key=lambda m: m["updated_at"], reverse=True)
        matches.sort(key=lambda m: m["similarity"], reverse=True)
        return matches[:limit]
