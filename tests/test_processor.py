import asyncio

import pytest

from nft_indexer import events
from nft_indexer.cache import IndexerCache
from nft_indexer.errors import ContractError, InvalidInputError
from nft_indexer.events import EventBus
from nft_indexer.metadata import MetadataResolver
from nft_indexer.processor import EventProcessor, parse_transfer
from tests.helpers import ALICE, BOB, Clock, FakeChain, FakeFetcher, ZERO, make_event


def _processor(storage, chain=None, fetcher=None, clock=None, timeout_ms=60_000):
    clock = clock or Clock()
    cache = IndexerCache(timeout_ms, clock)
    bus = EventBus()
    resolver = MetadataResolver(chain or FakeChain(), storage, cache.metadata, fetcher)
    return EventProcessor(storage, cache, bus, resolver, clock=clock)


class TestParseTransfer:
    def test_normalizes_token_id(self):
        t = parse_transfer(make_event(42, ZERO, ALICE, 100, tx="0xaa"), 5)
        assert t.token_id == "42"
        assert t.from_addr == ZERO and t.to == ALICE
        assert t.block_number == 100 and t.transaction_hash == "0xaa"
        assert t.timestamp == 5

    @pytest.mark.parametrize("args", [
        {"from": ZERO, "to": ALICE},
        {"from": ZERO, "to": ALICE, "tokenId": 1, "value": 3},
        None,
    ])
    def test_rejects_wrong_argument_set(self, args):
        event = make_event(1, ZERO, ALICE, 100)
        event["args"] = args
        with pytest.raises(InvalidInputError):
            parse_transfer(event, 0)

    def test_rejects_missing_block(self):
        event = make_event(1, ZERO, ALICE, 100)
        del event["blockNumber"]
        with pytest.raises(InvalidInputError):
            parse_transfer(event, 0)


class TestProcess:
    def test_stores_caches_and_notifies(self, kv_store):
        async def scenario():
            proc = _processor(kv_store)
            seen = []
            proc.bus.subscribe(events.TRANSFER, seen.append)

            transfer = await proc.process(make_event(1, ZERO, ALICE, 100))
            await proc.drain()
            return proc, seen, transfer

        proc, seen, transfer = asyncio.run(scenario())
        assert seen == [transfer]
        assert proc.cache.ownership.get("1") == ALICE
        assert asyncio.run(kv_store.get_token_owner("1")).owner == ALICE
        assert asyncio.run(kv_store.get_token_metadata("1")).uri == "ipfs://meta/1"

    def test_invalid_event_touches_nothing(self, kv_store):
        async def scenario():
            proc = _processor(kv_store)
            seen = []
            proc.bus.subscribe(events.TRANSFER, seen.append)
            event = make_event(1, ZERO, ALICE, 100)
            del event["args"]["tokenId"]
            with pytest.raises(InvalidInputError):
                await proc.process(event)
            return proc, seen

        proc, seen = asyncio.run(scenario())
        assert seen == []
        assert len(proc.cache.ownership) == 0
        assert asyncio.run(kv_store.get_token_transfers("1")) == []


class TestMetadataRefresh:
    def test_one_pending_refresh_per_token(self, kv_store):
        chain = FakeChain()

        async def scenario():
            proc = _processor(kv_store, chain=chain)
            await proc.process(make_event(1, ZERO, ALICE, 100))
            await proc.process(make_event(1, ALICE, BOB, 101))
            assert proc.pending == {"1"}
            await proc.drain()
            return proc

        proc = asyncio.run(scenario())
        assert chain.uri_calls == ["1"]
        assert proc.pending == set()

    def test_http_document_fetched(self, kv_store):
        chain = FakeChain(uris={"1": "https://meta.example/1.json"})
        fetcher = FakeFetcher({"https://meta.example/1.json": {"name": "One"}})

        async def scenario():
            proc = _processor(kv_store, chain=chain, fetcher=fetcher)
            await proc.process(make_event(1, ZERO, ALICE, 100))
            await proc.drain()

        asyncio.run(scenario())
        assert asyncio.run(kv_store.get_token_metadata("1")).document == {"name": "One"}

    def test_refresh_failure_published_not_raised(self, kv_store):
        chain = FakeChain(uris={"1": "https://meta.example/1.json"})

        async def scenario():
            proc = _processor(kv_store, chain=chain, fetcher=FakeFetcher())
            errors = []
            proc.bus.subscribe(events.ERROR, errors.append)
            await proc.process(make_event(1, ZERO, ALICE, 100))
            await proc.drain()
            return errors

        errors = asyncio.run(scenario())
        assert len(errors) == 1
        assert isinstance(errors[0], ContractError)
        assert asyncio.run(kv_store.get_token_owner("1")).owner == ALICE

    def test_cancel_pending(self, kv_store):
        async def scenario():
            proc = _processor(kv_store)
            proc.schedule_refresh("1")
            proc.schedule_refresh("2")
            await proc.cancel_pending()
            return proc

        assert asyncio.run(scenario()).pending == set()
