from .cache import IndexerCache, MetadataCache, OwnershipCache
from .config import IndexerConfig
from .db import KVStore, SqlStore, StorageBackend, open_storage
from .errors import (
    ContractError, DatabaseError, ErrorKind, IndexerError,
    InvalidInputError, NetworkError, RpcTimeoutError,
)
from .events import EventBus
from .indexer import NFTIndexer
from .models import SyncProgress, SyncStatus, TokenMetadata, TokenOwnership, TokenTransfer
from .sync import SyncEngine

__version__ = "0.1.0"

__all__ = [
    "NFTIndexer", "SyncEngine", "EventBus", "IndexerConfig",
    "StorageBackend", "KVStore", "SqlStore", "open_storage",
    "IndexerCache", "OwnershipCache", "MetadataCache",
    "TokenOwnership", "TokenTransfer", "TokenMetadata", "SyncProgress", "SyncStatus",
    "IndexerError", "ErrorKind", "NetworkError", "RpcTimeoutError",
    "ContractError", "DatabaseError", "InvalidInputError",
]
