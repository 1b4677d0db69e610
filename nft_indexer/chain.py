import logging
from typing import Any, Dict, List, Optional

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider

from . import config
from .helpers import to_addr, to_hex, topic_to_addr, topic_to_u256

logger = logging.getLogger(__name__)

RawEvent = Dict[str, Any]


# ---------- chain RPC ----------
class Web3Chain:
    """
    Chain collaborator backed by AsyncWeb3: block height, ERC-721 Transfer logs
    for one contract, and the ownerOf / tokenURI point calls.

    Events come back as
        {"args": {"from", "to", "tokenId"}, "blockNumber", "transactionHash", "logIndex"}
    ordered by (blockNumber, logIndex).
    """

    def __init__(self, w3: AsyncWeb3, contract_address: str):
        self.w3 = w3
        self.address = to_addr(contract_address)
        self.contract = w3.eth.contract(address=self.address, abi=config.ERC721_ABI)

    @classmethod
    def from_url(cls, rpc_url: str, contract_address: str) -> "Web3Chain":
        return cls(AsyncWeb3(AsyncHTTPProvider(rpc_url)), contract_address)

    async def block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def get_transfer_events(self, start: int, end: int) -> List[RawEvent]:
        logs = await self.w3.eth.get_logs({
            "fromBlock": start,
            "toBlock": end,
            "address": self.address,
            "topics": [config.ERC721_TRANSFER_TOPIC0],
        })
        events = []
        for lg in logs:
            topics = [to_hex(t) for t in lg["topics"]]
            # ERC-20 Transfer shares topic0 but has no indexed token id
            if len(topics) < 4:
                continue
            events.append({
                "args": {
                    "from":    topic_to_addr(topics[1]),
                    "to":      topic_to_addr(topics[2]),
                    "tokenId": topic_to_u256(topics[3]),
                },
                "blockNumber":     int(lg["blockNumber"]),
                "transactionHash": to_hex(lg["transactionHash"]),
                "logIndex":        int(lg["logIndex"]),
            })
        events.sort(key=lambda e: (e["blockNumber"], e["logIndex"]))
        return events

    async def owner_of(self, token_id: str) -> str:
        return to_addr(await self.contract.functions.ownerOf(int(token_id)).call())

    async def token_uri(self, token_id: str) -> str:
        return await self.contract.functions.tokenURI(int(token_id)).call()


# ---------- off-chain metadata ----------
class HttpMetadataFetcher:
    """GET a JSON metadata document. The session is created lazily."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def fetch_json(self, uri: str) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        async with self._session.get(uri) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
