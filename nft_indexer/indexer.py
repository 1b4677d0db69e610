import logging, time
from typing import Any, Callable, List, Optional

from .cache import IndexerCache
from .config import IndexerConfig
from .db import StorageBackend
from .errors import ContractError, IndexerError, InvalidInputError
from .events import EventBus
from .helpers import now_ms
from .log import log_rpc_call
from .metadata import MetadataFetcher, MetadataResolver
from .models import TokenMetadata, TokenTransfer
from .processor import EventProcessor
from .sync import Chain, SyncEngine

logger = logging.getLogger(__name__)


class NFTIndexer:
    """
    Local index for one ERC-721 contract.

        indexer = NFTIndexer(address, Web3Chain.from_url(rpc, address),
                             open_storage(cfg, address), cfg, HttpMetadataFetcher())
        indexer.on("sync", print)
        await indexer.init()          # historical sync, then live polling
        owner = await indexer.get_token_owner("1234")
        await indexer.close()

    The storage backend is passed in and owned by the indexer from init() to close().
    """

    def __init__(self, contract_address: str, chain: Chain, storage: StorageBackend,
                 config: Optional[IndexerConfig] = None,
                 fetcher: Optional[MetadataFetcher] = None,
                 clock: Callable[[], int] = now_ms,
                 **engine_options: Any):
        self.contract_address = contract_address
        self.config = config or IndexerConfig()
        self.chain = chain
        self.storage = storage
        self.clock = clock

        self.bus = EventBus()
        self.cache = IndexerCache(self.config.cache_timeout, clock)
        self.metadata = MetadataResolver(chain, storage, self.cache.metadata, fetcher)
        self.processor = EventProcessor(storage, self.cache, self.bus, self.metadata, clock=clock)
        self.engine = SyncEngine(chain, storage, self.processor, self.bus, self.config, **engine_options)
        self.initialized = False

    # ---------- lifecycle ----------
    async def init(self, live: bool = True) -> None:
        if self.initialized:
            return
        try:
            await self.storage.open()
            await self.engine.run_historical_sync()
        except IndexerError as e:
            logger.error("Failed to initialize NFT Indexer: %s", e)
            raise
        except Exception as e:
            logger.exception("Failed to initialize NFT Indexer")
            raise ContractError("Initialization failed", e) from e

        self.initialized = True
        if live:
            self.engine.start_live()
        logger.info("NFT Indexer initialized successfully")

    def on(self, kind: str, handler: Callable[[Any], None]) -> None:
        self.bus.subscribe(kind, handler)

    async def close(self) -> None:
        await self.engine.stop()
        await self.processor.cancel_pending()
        await self.storage.close()
        self.cache.clear()
        self.initialized = False
        logger.info("NFT Indexer closed")

    # ---------- queries ----------
    def _require_init(self) -> None:
        if not self.initialized:
            raise InvalidInputError("Indexer must be initialized before it can be queried")

    async def get_token_owner(self, token_id: str) -> str:
        self._require_init()
        token_id = str(token_id)

        cached = self.cache.ownership.get(token_id)
        if cached is not None:
            return cached

        ownership = await self.storage.get_token_owner(token_id)
        if ownership is not None:
            self.cache.ownership.set(token_id, ownership.owner)
            return ownership.owner

        try:
            started = time.monotonic()
            owner = await self.chain.owner_of(token_id)
            log_rpc_call("ownerOf", int((time.monotonic() - started) * 1000))
        except Exception as e:
            raise ContractError(f"Failed to get owner of token {token_id}", e) from e

        await self.storage.set_token_owner(token_id, owner, self.clock())
        self.cache.ownership.set(token_id, owner)
        return owner

    async def get_token_metadata(self, token_id: str) -> TokenMetadata:
        self._require_init()
        return await self.metadata.get(str(token_id))

    async def get_token_transfers(self, token_id: str) -> List[TokenTransfer]:
        self._require_init()
        return await self.storage.get_token_transfers(str(token_id))

    async def get_owner_tokens(self, owner: str) -> List[str]:
        self._require_init()
        return await self.storage.get_owner_tokens(owner)
