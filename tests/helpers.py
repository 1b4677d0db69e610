"""Fakes for the chain and HTTP collaborators, plus small test utilities."""

from __future__ import annotations

import asyncio
from typing import Any, Callable



CONTRACT = "0x91417bd88Af5071cCEa8d3Bf3aF410660E356B06"
ALICE = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BOB = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
CAROL = "0xdbF03B407c01E7cD3CBea99509d93f8DDDC8C6FB"
ZERO = "0x0000000000000000000000000000000000000000"


def make_event(
    token_id: int | str,
    frm: str,
    to: str,
    block: int,
    tx: str | None = None,
    log_index: int = 0,
) -> dict[str, Any]:
    """Build a decoded Transfer event shaped like Web3Chain's output."""
    return {
        "args": {"from": frm, "to": to, "tokenId": token_id},
        "blockNumber": block,
        "transactionHash": tx or f"0x{block:064x}",
        "logIndex": log_index,
    }


class FakeChain:
    """In-memory chain collaborator with failure and latency injection."""

    def __init__(
        self,
        height: int = 0,
        events: list[dict[str, Any]] | None = None,
        owners: dict[str, str] | None = None,
        uris: dict[str, str] | None = None,
    ) -> None:
        self.height = height
        self.events = list(events or [])
        self.owners = dict(owners or {})
        self.uris = dict(uris or {})
        self.calls: list[tuple[int, int]] = []
        self.owner_calls: list[str] = []
        self.uri_calls: list[str] = []
        self.failures: list[BaseException] = []
        self.hang: Callable[[int, int], bool] | None = None
        self.gate: asyncio.Event | None = None

    async def block_number(self) -> int:
        return self.height

    async def get_transfer_events(self, start: int, end: int) -> list[dict[str, Any]]:
        self.calls.append((start, end))
        if self.failures:
            raise self.failures.pop(0)
        if self.hang is not None and self.hang(start, end):
            await asyncio.sleep(10)
        if self.gate is not None:
            await self.gate.wait()
        return [e for e in self.events if start <= e["blockNumber"] <= end]

    async def owner_of(self, token_id: str) -> str:
        self.owner_calls.append(token_id)
        if token_id not in self.owners:
            raise RuntimeError("execution reverted: ERC721: invalid token ID")
        return self.owners[token_id]

    async def token_uri(self, token_id: str) -> str:
        self.uri_calls.append(token_id)
        return self.uris.get(token_id, f"ipfs://meta/{token_id}")


class FakeFetcher:
    """HTTP metadata collaborator returning canned documents."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self.documents = dict(documents or {})
        self.calls: list[str] = []

    async def fetch_json(self, uri: str) -> dict[str, Any]:
        self.calls.append(uri)
        if uri not in self.documents:
            raise RuntimeError(f"404 for {uri}")
        return self.documents[uri]


class SleepRecorder:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Clock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now
