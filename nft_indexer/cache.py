from typing import Callable, Dict, Optional

from .helpers import now_ms
from .models import TokenMetadata


class OwnershipCache:
    """tokenId -> owner. No TTL: every applied transfer keeps it current."""

    def __init__(self):
        self._owners: Dict[str, str] = {}

    def get(self, token_id: str) -> Optional[str]:
        return self._owners.get(token_id)

    def set(self, token_id: str, owner: str) -> None:
        self._owners[token_id] = owner

    def clear(self) -> None:
        self._owners.clear()

    def __contains__(self, token_id):
        return token_id in self._owners

    def __len__(self):
        return len(self._owners)


class MetadataCache:
    """tokenId -> TokenMetadata, trusted while `now - last_updated < timeout_ms`."""

    def __init__(self, timeout_ms: int, clock: Callable[[], int] = now_ms):
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._entries: Dict[str, TokenMetadata] = {}

    def now(self) -> int:
        return self._clock()

    def is_fresh(self, md: TokenMetadata) -> bool:
        return self._clock() - md.last_updated < self.timeout_ms

    def get(self, token_id: str) -> Optional[TokenMetadata]:
        md = self._entries.get(token_id)
        if md is None or not self.is_fresh(md):
            return None
        return md

    def set(self, md: TokenMetadata) -> None:
        self._entries[md.token_id] = md

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class IndexerCache:
    def __init__(self, metadata_timeout_ms: int, clock: Callable[[], int] = now_ms):
        self.ownership = OwnershipCache()
        self.metadata = MetadataCache(metadata_timeout_ms, clock)

    def clear(self) -> None:
        self.ownership.clear()
        self.metadata.clear()
