"""Explicit wiring of the store, orchestrators, and read facade.

A ``Gateway`` is built once per process (or per test) and handed to the MCP
server and CLI. Nothing is held in module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ahacache.config import ServerConfig, is_config_complete
from ahacache.core import CacheStore
from ahacache.embedding import EmbeddingOrchestrator, EmbeddingProvider
from ahacache.hybrid import HybridReader
from ahacache.remote import AhaClient, RemoteEntitySource
from ahacache.similarity import SimilarityIndex
from ahacache.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    store: CacheStore
    index: SimilarityIndex
    embeddings: EmbeddingOrchestrator
    reader: HybridReader
    config: ServerConfig
    source: RemoteEntitySource | None = None
    sync: SyncOrchestrator | None = None
    config_path: Path | None = None
    _owned_client: AhaClient | None = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        config: ServerConfig,
        *,
        store: CacheStore | None = None,
        source: RemoteEntitySource | None = None,
        provider: EmbeddingProvider | None = None,
        config_path: Path | None = None,
    ) -> Gateway:
        """Open the store and construct every component.

        Without an explicit *source*, an ``AhaClient`` is created when the
        configuration carries both company and token. With neither, the
        gateway serves cached data only and sync is unavailable.
        """
        if store is None:
            store = CacheStore.from_config(config)
        else:
            store.initialize()
        owned: AhaClient | None = None
        if source is None and is_config_complete(config):
            owned = AhaClient(config["company"], config["token"])
            source = owned
        index = SimilarityIndex(store)
        gateway = cls(
            store=store,
            index=index,
            embeddings=EmbeddingOrchestrator(store, provider, index),
            reader=HybridReader(store, source),
            config=config,
            source=source,
            sync=SyncOrchestrator(store, source) if source is not None else None,
            config_path=config_path,
            _owned_client=owned,
        )
        logger.info(
            "Gateway ready",
            extra={"db_path": str(store.db_path), "vector_enabled": store.vector_enabled},
        )
        return gateway

    async def aclose(self) -> None:
        """Stop every job, then release the remote client and the store."""
        if self.sync is not None:
            await self.sync.shutdown()
        await self.embeddings.shutdown()
        if self._owned_client is not None:
            await self._owned_client.aclose()
        self.store.close()
