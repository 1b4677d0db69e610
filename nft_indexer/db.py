import sqlite3, json, logging, re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .config import IndexerConfig
from .errors import DatabaseError
from .models import TokenMetadata, TokenOwnership, TokenTransfer

logger = logging.getLogger(__name__)

# ---------- embedded key layout ----------
OWNERSHIP     = "own:"
TRANSFER      = "transfer:"
METADATA      = "meta:"
OWNER_TOKENS  = "tokens:"
SYNC_STATE    = "sync:"
SYNC_LAST_KEY = SYNC_STATE + "last"

# upper bound for prefix range scans
SCAN_END = "\xff"

POSTGRES_SCHEMES = ("postgres://", "postgresql://")
_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Op = Tuple  # ("put", key, value) | ("del", key)


def ownership_key(token_id: str) -> str:
    return f"{OWNERSHIP}{token_id}"

def transfer_key(t: TokenTransfer) -> str:
    return f"{TRANSFER}{t.token_id}:{t.block_number}:{t.transaction_hash}"

def metadata_key(token_id: str) -> str:
    return f"{METADATA}{token_id}"

def owner_tokens_key(owner: str) -> str:
    return f"{OWNER_TOKENS}{owner}"

def _compact(value) -> str:
    return json.dumps(value, separators=(",", ":"))


@contextmanager
def _wrap(message: str):
    try:
        yield
    except DatabaseError:
        raise
    except (sqlite3.Error, psycopg.Error, ValueError, OSError) as e:
        raise DatabaseError(message, e) from e


def db(path: str) -> sqlite3.Connection:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.row_factory = sqlite3.Row
    return conn


class StorageBackend(ABC):
    """Durable side of the index. Pick an implementation once, via open_storage()."""

    keeps_transfer_history = True

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def get_last_synced_block(self) -> int: ...

    @abstractmethod
    async def set_sync_state(self, block_number: int, status: str = "active") -> None: ...

    @abstractmethod
    async def record_transfer(self, transfer: TokenTransfer) -> None:
        """Persist one applied transfer (history and/or current owner)."""

    @abstractmethod
    async def set_token_owner(self, token_id: str, owner: str, timestamp: int) -> None: ...

    @abstractmethod
    async def get_token_owner(self, token_id: str) -> Optional[TokenOwnership]: ...

    @abstractmethod
    async def get_token_transfers(self, token_id: str) -> List[TokenTransfer]: ...

    @abstractmethod
    async def get_owner_tokens(self, owner: str) -> List[str]: ...

    @abstractmethod
    async def set_token_metadata(self, metadata: TokenMetadata) -> None: ...

    @abstractmethod
    async def get_token_metadata(self, token_id: str) -> Optional[TokenMetadata]: ...


# =====================================================================
# embedded key/value store
# =====================================================================
class KVStore(StorageBackend):
    """
    Key/value namespaces in a single sqlite table:

        own:<tokenId>                                   TokenOwnership JSON
        transfer:<tokenId>:<blockNumber>:<txHash>       TokenTransfer JSON
        meta:<tokenId>                                  TokenMetadata JSON
        tokens:<owner>                                  JSON list of tokenIds
        sync:last                                       last synced block

    The owner index only ever grows: a token stays listed under a previous
    owner after it is transferred away.
    """

    keeps_transfer_history = True

    def __init__(self, path: str):
        self.path = path
        self.conn: Optional[sqlite3.Connection] = None

    async def open(self) -> None:
        if self.conn is not None:
            return
        with _wrap(f"Failed to initialize database at {self.path}"):
            self.conn = db(self.path)
            self.conn.execute("CREATE TABLE IF NOT EXISTS kv (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
        logger.info("Opened key/value store at %s", self.path)

    async def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    # ---------- raw kv ----------
    def _require(self) -> sqlite3.Connection:
        if self.conn is None:
            raise DatabaseError("key/value store is not open")
        return self.conn

    def _get(self, key: str) -> Optional[str]:
        row = self._require().execute("SELECT v FROM kv WHERE k=?", (key,)).fetchone()
        return row[0] if row else None

    def _scan(self, prefix: str) -> List[str]:
        rows = self._require().execute(
            "SELECT v FROM kv WHERE k >= ? AND k <= ? ORDER BY k",
            (prefix, prefix + SCAN_END),
        ).fetchall()
        return [r[0] for r in rows]

    def _apply(self, ops: Iterable[Op]) -> None:
        conn = self._require()
        conn.execute("BEGIN")
        try:
            for op in ops:
                if op[0] == "del":
                    conn.execute("DELETE FROM kv WHERE k=?", (op[1],))
                elif op[0] == "put":
                    value = op[2] if isinstance(op[2], str) else _compact(op[2])
                    conn.execute(
                        "INSERT INTO kv(k, v) VALUES(?, ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v;",
                        (op[1], value),
                    )
                else:
                    raise ValueError(f"unknown batch op {op[0]!r}")
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    async def batch(self, ops: Sequence[Op]) -> None:
        """Apply put/del operations atomically."""
        with _wrap("Failed to execute batch operation"):
            self._apply(ops)

    def _owner_index_ops(self, owner: str, token_id: str) -> List[Op]:
        raw = self._get(owner_tokens_key(owner))
        tokens = json.loads(raw) if raw else []
        if token_id in tokens:
            return []
        return [("put", owner_tokens_key(owner), tokens + [token_id])]

    # ---------- sync state ----------
    async def get_last_synced_block(self) -> int:
        with _wrap("Failed to get last synced block"):
            raw = self._get(SYNC_LAST_KEY)
            return int(raw) if raw is not None else 0

    async def set_sync_state(self, block_number: int, status: str = "active") -> None:
        with _wrap(f"Failed to set sync state to {block_number}"):
            self._apply([("put", SYNC_LAST_KEY, str(block_number))])

    # ---------- ownership / transfers ----------
    async def record_transfer(self, transfer: TokenTransfer) -> None:
        with _wrap(f"Failed to record transfer of token {transfer.token_id}"):
            ownership = TokenOwnership(token_id=transfer.token_id, owner=transfer.to,
                                       timestamp=transfer.timestamp)
            ops: List[Op] = [
                ("put", transfer_key(transfer), transfer.to_json()),
                ("put", ownership_key(transfer.token_id), ownership.to_json()),
            ]
            ops += self._owner_index_ops(transfer.to, transfer.token_id)
            self._apply(ops)

    async def set_token_owner(self, token_id: str, owner: str, timestamp: int) -> None:
        with _wrap(f"Failed to add token {token_id} to owner {owner}"):
            ownership = TokenOwnership(token_id=token_id, owner=owner, timestamp=timestamp)
            self._apply([("put", ownership_key(token_id), ownership.to_json())]
                        + self._owner_index_ops(owner, token_id))

    async def get_token_owner(self, token_id: str) -> Optional[TokenOwnership]:
        with _wrap(f"Failed to get token owner for {token_id}"):
            raw = self._get(ownership_key(token_id))
            return TokenOwnership.from_json(raw) if raw else None

    async def get_token_transfers(self, token_id: str) -> List[TokenTransfer]:
        with _wrap(f"Failed to get transfers for token {token_id}"):
            transfers = [TokenTransfer.from_json(v) for v in self._scan(f"{TRANSFER}{token_id}:")]
            return sorted(transfers, key=lambda t: t.block_number, reverse=True)

    async def get_owner_tokens(self, owner: str) -> List[str]:
        with _wrap(f"Failed to get tokens for owner {owner}"):
            raw = self._get(owner_tokens_key(owner))
            return json.loads(raw) if raw else []

    # ---------- metadata ----------
    async def set_token_metadata(self, metadata: TokenMetadata) -> None:
        with _wrap(f"Failed to set metadata for token {metadata.token_id}"):
            self._apply([("put", metadata_key(metadata.token_id), metadata.to_json())])

    async def get_token_metadata(self, token_id: str) -> Optional[TokenMetadata]:
        with _wrap(f"Failed to get metadata for token {token_id}"):
            raw = self._get(metadata_key(token_id))
            return TokenMetadata.from_json(raw) if raw else None


# =====================================================================
# relational store
# =====================================================================
def is_postgres_dsn(dsn: str) -> bool:
    return dsn.startswith(POSTGRES_SCHEMES)

def sqlite_path(dsn: str) -> str:
    if dsn.startswith("sqlite:///"):
        return dsn[len("sqlite:///"):] or ":memory:"
    if dsn == "sqlite://":
        return ":memory:"
    return dsn

def _ts_ms(value) -> int:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(value)


class SqlStore(StorageBackend):
    """
    One denormalized row per (contract_address, token_id) plus one sync-state
    row per contract. PostgreSQL DSNs go through a psycopg connection pool;
    anything else is treated as a sqlite path.

    Transfer history is not kept: get_token_transfers() always returns [].
    """

    keeps_transfer_history = False

    def __init__(self, dsn: str, contract_address: str, table_prefix: str = "nft_idx_",
                 max_connections: int = 10, ssl: bool = False, drop_on_init: bool = False):
        if table_prefix and not _IDENT.match(table_prefix):
            raise ValueError(f"invalid table prefix {table_prefix!r}")
        self.dsn = dsn
        self.contract_address = contract_address
        self.postgres = is_postgres_dsn(dsn)
        self.nfts = f"{table_prefix}nfts"
        self.sync_table = f"{table_prefix}sync_state"
        self.max_connections = max_connections
        self.ssl = ssl
        self.drop_on_init = drop_on_init
        self.pool: Optional[ConnectionPool] = None
        self.conn: Optional[sqlite3.Connection] = None

    # ---------- connection handling ----------
    async def open(self) -> None:
        if self.pool is not None or self.conn is not None:
            return
        with _wrap("Failed to initialize database"):
            if self.postgres:
                kwargs = {"row_factory": dict_row}
                if self.ssl:
                    kwargs["sslmode"] = "require"
                self.pool = ConnectionPool(self.dsn, min_size=1, max_size=self.max_connections,
                                           kwargs=kwargs, open=False)
                self.pool.open(wait=True)
            else:
                self.conn = db(sqlite_path(self.dsn))

            if self.drop_on_init:
                self._execute(f"DROP TABLE IF EXISTS {self.sync_table}")
                self._execute(f"DROP TABLE IF EXISTS {self.nfts}")
                logger.info("Dropped existing tables")
            for stmt in self._schema():
                self._execute(stmt)
        logger.info("Database initialized successfully")

    async def close(self) -> None:
        if self.pool is not None:
            self.pool.close()
            self.pool = None
            logger.info("Disconnected from PostgreSQL database")
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    @contextmanager
    def _connection(self):
        if self.pool is not None:
            with self.pool.connection() as conn:
                yield conn
        elif self.conn is not None:
            yield self.conn
        else:
            raise DatabaseError("relational store is not open")

    def _sql(self, query: str) -> str:
        return query.replace("?", "%s") if self.postgres else query

    def _execute(self, query: str, params: tuple = ()) -> int:
        with self._connection() as conn:
            return conn.execute(self._sql(query), params).rowcount

    def _fetchone(self, query: str, params: tuple = ()):
        with self._connection() as conn:
            return conn.execute(self._sql(query), params).fetchone()

    def _fetchall(self, query: str, params: tuple = ()):
        with self._connection() as conn:
            return conn.execute(self._sql(query), params).fetchall()

    def _schema(self) -> List[str]:
        pk = "SERIAL PRIMARY KEY" if self.postgres else "INTEGER PRIMARY KEY AUTOINCREMENT"
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {self.nfts} (
                id               {pk},
                contract_address TEXT NOT NULL,
                token_id         TEXT NOT NULL,
                owner            TEXT NOT NULL,
                metadata         TEXT,
                last_updated     TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                block_number     INTEGER NOT NULL,
                is_active        BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,
            f"CREATE UNIQUE INDEX IF NOT EXISTS {self.nfts}_contract_token_idx "
            f"ON {self.nfts} (contract_address, token_id)",
            f"""
            CREATE TABLE IF NOT EXISTS {self.sync_table} (
                id                {pk},
                contract_address  TEXT NOT NULL,
                last_synced_block INTEGER NOT NULL,
                last_synced_at    TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                status            VARCHAR(20) NOT NULL DEFAULT 'active'
            )
            """,
            f"CREATE UNIQUE INDEX IF NOT EXISTS {self.sync_table}_contract_idx "
            f"ON {self.sync_table} (contract_address)",
        ]

    # ---------- sync state ----------
    async def get_last_synced_block(self) -> int:
        with _wrap("Failed to get last synced block"):
            row = self._fetchone(
                f"SELECT last_synced_block FROM {self.sync_table} WHERE contract_address=? LIMIT 1",
                (self.contract_address,),
            )
            return int(row["last_synced_block"]) if row else 0

    async def set_sync_state(self, block_number: int, status: str = "active") -> None:
        with _wrap(f"Failed to update sync state to {block_number}"):
            self._execute(f"""
                INSERT INTO {self.sync_table} (contract_address, last_synced_block, last_synced_at, status)
                VALUES (?, ?, CURRENT_TIMESTAMP, ?)
                ON CONFLICT (contract_address) DO UPDATE SET
                    last_synced_block = excluded.last_synced_block,
                    last_synced_at    = CURRENT_TIMESTAMP,
                    status            = excluded.status
            """, (self.contract_address, block_number, status))

    # ---------- nft rows ----------
    def upsert_nft(self, token_id: str, owner: str, block_number: int,
                   metadata: Optional[str] = None) -> None:
        # a missing metadata value keeps whatever the row already holds
        self._execute(f"""
            INSERT INTO {self.nfts} (contract_address, token_id, owner, metadata, block_number, last_updated)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT (contract_address, token_id) DO UPDATE SET
                owner        = excluded.owner,
                metadata     = COALESCE(excluded.metadata, {self.nfts}.metadata),
                block_number = excluded.block_number,
                last_updated = CURRENT_TIMESTAMP
        """, (self.contract_address, token_id, owner, metadata, block_number))

    async def record_transfer(self, transfer: TokenTransfer) -> None:
        with _wrap(f"Failed to upsert token {transfer.token_id}"):
            self.upsert_nft(transfer.token_id, transfer.to, transfer.block_number)

    async def set_token_owner(self, token_id: str, owner: str, timestamp: int) -> None:
        # the block is unknown here, so an existing row keeps its block number
        with _wrap(f"Failed to set owner of token {token_id}"):
            self._execute(f"""
                INSERT INTO {self.nfts} (contract_address, token_id, owner, block_number, last_updated)
                VALUES (?, ?, ?, 0, CURRENT_TIMESTAMP)
                ON CONFLICT (contract_address, token_id) DO UPDATE SET
                    owner        = excluded.owner,
                    last_updated = CURRENT_TIMESTAMP
            """, (self.contract_address, token_id, owner))

    async def get_token_owner(self, token_id: str) -> Optional[TokenOwnership]:
        with _wrap(f"Failed to get NFT {token_id}"):
            row = self._fetchone(
                f"SELECT owner, last_updated FROM {self.nfts} "
                f"WHERE contract_address=? AND token_id=? AND is_active",
                (self.contract_address, token_id),
            )
            if not row:
                return None
            return TokenOwnership(token_id=token_id, owner=row["owner"],
                                  timestamp=_ts_ms(row["last_updated"]))

    async def get_token_transfers(self, token_id: str) -> List[TokenTransfer]:
        return []

    async def get_owner_tokens(self, owner: str) -> List[str]:
        with _wrap(f"Failed to get tokens for owner {owner}"):
            rows = self._fetchall(
                f"SELECT token_id FROM {self.nfts} "
                f"WHERE contract_address=? AND owner=? AND is_active ORDER BY id",
                (self.contract_address, owner),
            )
            return [r["token_id"] for r in rows]

    async def set_token_metadata(self, metadata: TokenMetadata) -> None:
        with _wrap(f"Failed to set metadata for token {metadata.token_id}"):
            updated = self._execute(
                f"UPDATE {self.nfts} SET metadata=?, last_updated=CURRENT_TIMESTAMP "
                f"WHERE contract_address=? AND token_id=?",
                (metadata.to_json(), self.contract_address, metadata.token_id),
            )
        if not updated:
            logger.debug("No row for token %s yet; metadata kept in cache only", metadata.token_id)

    async def get_token_metadata(self, token_id: str) -> Optional[TokenMetadata]:
        with _wrap(f"Failed to get metadata for token {token_id}"):
            row = self._fetchone(
                f"SELECT metadata FROM {self.nfts} WHERE contract_address=? AND token_id=?",
                (self.contract_address, token_id),
            )
            if not row or not row["metadata"]:
                return None
            return TokenMetadata.from_json(row["metadata"])


def open_storage(config: IndexerConfig, contract_address: str) -> StorageBackend:
    """Build (but do not open) the backend the configuration asks for."""
    if config.relational:
        return SqlStore(
            config.database_url,
            contract_address,
            table_prefix=config.table_prefix,
            max_connections=config.max_connections,
            ssl=config.db_ssl,
            drop_on_init=config.drop_on_init,
        )
    return KVStore(config.db_path)
