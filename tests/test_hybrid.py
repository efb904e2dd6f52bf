"""Tests for the cache-first read facade."""

from __future__ import annotations

import pytest

from ahacache.core import CacheStore
from ahacache.entities import UnsupportedEntityTypeError
from ahacache.hybrid import HybridReader
from ahacache.remote import RemoteSourceError
from tests._fakes import FakeRemoteSource, make_features


@pytest.fixture
def cached(store: CacheStore) -> CacheStore:
    for record in make_features(5):
        store.upsert_entity("features", record)
    return store


class TestList:
    async def test_served_from_cache(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        reader = HybridReader(cached, remote)
        result = await reader.list("features", page_size=2)
        assert result["source"] == "cache"
        assert result["entity_type"] == "features"
        assert len(result["records"]) == 2
        assert result["pagination"] == {"page": 1, "page_size": 2, "total_pages": 3, "total_records": 5}
        assert remote.calls == []

    async def test_cached_records_are_remote_payloads(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).list("feature", {"id": "F002"})
        assert result["records"] == [make_features(5)[1]]

    async def test_cacheable_filter(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).list("features", {"product_id": "P1"})
        assert result["source"] == "cache"
        assert result["pagination"]["total_records"] == 5

    async def test_miss_goes_remote(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).list("features", {"product_id": "P2"}, page_size=20)
        assert result["source"] == "remote"
        assert len(result["records"]) == 20
        assert result["pagination"]["total_records"] == 25
        assert remote.calls == [("features", 1, {"product_id": "P2"})]

    async def test_empty_type_goes_remote(self, store: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(store, remote).list("epics")
        assert result["source"] == "remote"
        assert result["records"] == []

    async def test_uncacheable_filter_goes_remote(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).list("features", {"q": "ranking"})
        assert result["source"] == "remote"
        assert remote.calls[0][2] == {"q": "ranking"}

    async def test_force_remote(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).list("features", force_remote=True, page=2, page_size=10)
        assert result["source"] == "remote"
        assert [r["id"] for r in result["records"]][0] == "F011"

    async def test_no_source_on_miss(self, store: CacheStore) -> None:
        with pytest.raises(RuntimeError, match="No remote source"):
            await HybridReader(store).list("features")

    async def test_no_source_needed_on_hit(self, cached: CacheStore) -> None:
        result = await HybridReader(cached).list("features")
        assert result["source"] == "cache"

    async def test_rejects_bad_paging(self, cached: CacheStore) -> None:
        with pytest.raises(ValueError, match="page"):
            await HybridReader(cached).list("features", page=0)

    async def test_rejects_unknown_type(self, cached: CacheStore) -> None:
        with pytest.raises(UnsupportedEntityTypeError):
            await HybridReader(cached).list("widgets")


class TestGet:
    async def test_cache_hit(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).get("features", "F003")
        assert result["source"] == "cache"
        assert result["record"] is not None
        assert result["record"]["reference_num"] == "APP-3"

    async def test_miss_goes_remote(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).get("features", "F020")
        assert result["source"] == "remote"
        assert result["record"] is not None
        assert result["record"]["id"] == "F020"

    async def test_force_remote(self, cached: CacheStore, remote: FakeRemoteSource) -> None:
        result = await HybridReader(cached, remote).get("features", "F003", force_remote=True)
        assert result["source"] == "remote"

    async def test_remote_not_found(self, store: CacheStore, remote: FakeRemoteSource) -> None:
        with pytest.raises(RemoteSourceError) as excinfo:
            await HybridReader(store, remote).get("features", "NOPE")
        assert excinfo.value.status_code == 404

    async def test_reads_do_not_populate_cache(self, store: CacheStore, remote: FakeRemoteSource) -> None:
        await HybridReader(store, remote).get("features", "F001")
        assert store.get_entity("features", "F001") is None
