import logging, time
from typing import Any, Dict, Optional, Protocol

from .cache import MetadataCache
from .db import StorageBackend
from .errors import ContractError, IndexerError
from .log import log_rpc_call
from .models import TokenMetadata

logger = logging.getLogger(__name__)


class MetadataFetcher(Protocol):
    async def fetch_json(self, uri: str) -> Dict[str, Any]: ...


class MetadataResolver:
    """cache -> store -> tokenURI (+ HTTP for http(s) URIs), honoring staleness."""

    def __init__(self, chain, storage: StorageBackend, cache: MetadataCache,
                 fetcher: Optional[MetadataFetcher] = None):
        self.chain = chain
        self.storage = storage
        self.cache = cache
        self.fetcher = fetcher

    async def get(self, token_id: str) -> TokenMetadata:
        cached = self.cache.get(token_id)
        if cached is not None:
            return cached

        stored = await self.storage.get_token_metadata(token_id)
        if stored is not None and self.cache.is_fresh(stored):
            self.cache.set(stored)
            return stored

        return await self.refresh(token_id)

    async def refresh(self, token_id: str) -> TokenMetadata:
        try:
            started = time.monotonic()
            uri = await self.chain.token_uri(token_id)
            log_rpc_call("tokenURI", int((time.monotonic() - started) * 1000))

            document = None
            if uri.startswith("http") and self.fetcher is not None:
                document = await self.fetcher.fetch_json(uri)

            md = TokenMetadata(token_id=token_id, uri=uri, document=document,
                               last_updated=self.cache.now())
            await self.storage.set_token_metadata(md)
        except IndexerError:
            logger.error("Failed to update metadata for token %s", token_id)
            raise
        except Exception as e:
            logger.error("Failed to update metadata for token %s: %s", token_id, e)
            raise ContractError(f"Failed to get metadata for token {token_id}", e) from e

        self.cache.set(md)
        logger.debug("Updated metadata for token %s", token_id)
        return md
