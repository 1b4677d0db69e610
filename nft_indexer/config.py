import os, logging
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# always load from local file
load_dotenv(".env")

logger = logging.getLogger(__name__)

# --- ERC-721 Transfer(address,address,uint256) topic (keccak256) ---
ERC721_TRANSFER_TOPIC0 = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ZERO_ADDR              = "0x0000000000000000000000000000000000000000"

# Minimal ABI for the point calls we make
ERC721_ABI = [
    {
        "name": "ownerOf", "type": "function", "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "tokenURI", "type": "function", "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    },
]


class IndexerConfig(BaseModel):
    """
    Recognized options. Storage is relational when `database_url` is set,
    otherwise the embedded store at `db_path` is used.

    There is no `max_concurrent`: block ranges are processed one at a time and
    passing it is a validation error.
    """
    model_config = ConfigDict(extra="forbid")

    start_block: int   = Field(0, ge=0)
    batch_size: int    = Field(1000, ge=1)
    cache_timeout: int = Field(3_600_000, ge=0)   # ms
    poll_interval: int = Field(12_000, ge=1)      # ms

    db_path: str                = "nft_index.sqlite"
    database_url: Optional[str] = None
    table_prefix: str           = "nft_idx_"
    max_connections: int        = Field(10, ge=1)
    db_ssl: bool                = False
    drop_on_init: bool          = False

    @property
    def relational(self) -> bool:
        return bool(self.database_url)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "IndexerConfig":
        env = os.environ if env is None else env

        if env.get("MAX_CONCURRENT"):
            logger.warning("MAX_CONCURRENT=%s ignored: block ranges are synced sequentially",
                           env["MAX_CONCURRENT"])

        return cls(
            start_block     = int(env.get("START_BLOCK", "0")),
            batch_size      = int(env.get("BATCH_SIZE", "1000")),
            cache_timeout   = int(env.get("CACHE_TIMEOUT_MS", "3600000")),
            poll_interval   = int(env.get("POLL_INTERVAL_MS", "12000")),
            db_path         = env.get("DB_PATH", "nft_index.sqlite"),
            database_url    = env.get("DATABASE_URL") or None,
            table_prefix    = env.get("DB_TABLE_PREFIX", "nft_idx_"),
            max_connections = int(env.get("DB_MAX_CONNECTIONS", "10")),
            db_ssl          = env.get("DB_SSL", "false").lower() == "true",
            drop_on_init    = env.get("DB_DROP_ON_INIT", "false").lower() == "true",
        )
