"""Shared pytest fixtures for ahacache tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from ahacache.core import CacheStore
from ahacache.embedding import EmbeddingOrchestrator
from ahacache.similarity import SimilarityIndex
from ahacache.sync import SyncOrchestrator
from tests._fakes import FakeEmbeddingProvider, FakeRemoteSource, make_features


@pytest.fixture
def store(tmp_path: Path) -> Generator[CacheStore, None, None]:
    """Fresh CacheStore for each test."""
    s = CacheStore(tmp_path / "cache.db")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def vector_store(tmp_path: Path) -> Generator[CacheStore, None, None]:
    """CacheStore with semantic search forced on."""
    s = CacheStore(tmp_path / "vectors.db", semantic_search=True)
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def remote() -> FakeRemoteSource:
    return FakeRemoteSource({"features": make_features(25), "epics": []})


@pytest.fixture
async def sync(store: CacheStore, remote: FakeRemoteSource) -> AsyncGenerator[SyncOrchestrator, None]:
    orchestrator = SyncOrchestrator(store, remote)
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
async def embedder(
    vector_store: CacheStore, provider: FakeEmbeddingProvider
) -> AsyncGenerator[EmbeddingOrchestrator, None]:
    orchestrator = EmbeddingOrchestrator(vector_store, provider, SimilarityIndex(vector_store))
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
