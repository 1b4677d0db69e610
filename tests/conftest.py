"""Shared fixtures for the indexer tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from nft_indexer.config import IndexerConfig
from nft_indexer.db import KVStore, SqlStore
from nft_indexer.indexer import NFTIndexer
from tests.helpers import CONTRACT, Clock, FakeChain, FakeFetcher, SleepRecorder


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def config() -> IndexerConfig:
    return IndexerConfig(start_block=100, batch_size=10, cache_timeout=60_000, poll_interval=10)


@pytest.fixture
def kv_store():
    store = KVStore(":memory:")
    asyncio.run(store.open())
    yield store
    asyncio.run(store.close())


@pytest.fixture
def sql_store(tmp_path):
    store = SqlStore(str(tmp_path / "nft.sqlite"), CONTRACT)
    asyncio.run(store.open())
    yield store
    asyncio.run(store.close())


@pytest.fixture
def make_indexer(chain, fetcher, sleeper, clock, config):
    """Factory for an NFTIndexer wired to the fakes, with no real sleeping."""

    def _make(storage, **overrides: Any) -> NFTIndexer:
        return NFTIndexer(
            CONTRACT,
            overrides.pop("chain", chain),
            storage,
            overrides.pop("config", config),
            overrides.pop("fetcher", fetcher),
            clock=overrides.pop("clock", clock),
            sleep=sleeper,
            event_delay=0,
            batch_delay=0,
            query_timeout=overrides.pop("query_timeout", 0.05),
            **overrides,
        )

    return _make
