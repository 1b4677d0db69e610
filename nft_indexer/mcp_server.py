# mcp_server.py: read-only query tools over the local index
import os, asyncio
from typing import Any, Dict, List

from fastmcp import FastMCP
from pydantic import BaseModel, Field

from .config import IndexerConfig
from .db import StorageBackend, open_storage
from .log import setup_logging

# --------- Pydantic input models ----------
class TokenIn(BaseModel):
    token_id: str

class TokenHistoryIn(BaseModel):
    token_id: str
    limit: int = Field(50, ge=1, le=500)

class OwnerIn(BaseModel):
    owner: str
    limit: int = Field(100, ge=1, le=5000)

# ----------------- core queries ------------------
# Answered from the store only; no contract calls.

async def token_owner(storage: StorageBackend, token_id: str) -> Dict[str, Any]:
    """Current owner of a token."""
    ownership = await storage.get_token_owner(token_id)
    if ownership is None:
        return {"error": f"token {token_id} not indexed"}
    return ownership.model_dump(by_alias=True)

async def token_metadata(storage: StorageBackend, token_id: str) -> Dict[str, Any]:
    md = await storage.get_token_metadata(token_id)
    if md is None:
        return {"error": f"no metadata stored for token {token_id}"}
    return md.model_dump(by_alias=True)

async def token_transfers(storage: StorageBackend, token_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Transfer history, newest first. Empty on backends that keep no history."""
    transfers = await storage.get_token_transfers(token_id)
    return [t.model_dump(by_alias=True) for t in transfers[:limit]]

async def owner_tokens(storage: StorageBackend, owner: str, limit: int = 100) -> Dict[str, Any]:
    tokens = await storage.get_owner_tokens(owner)
    return {"owner": owner, "count": len(tokens), "tokens": tokens[:limit]}

async def sync_status(storage: StorageBackend) -> Dict[str, Any]:
    return {
        "backend": type(storage).__name__,
        "lastSyncedBlock": await storage.get_last_synced_block(),
        "keepsTransferHistory": storage.keeps_transfer_history,
    }

# ----------------- Tools ------------------
def build_mcp(storage: StorageBackend) -> FastMCP:
    mcp = FastMCP("nft-index-mcp", version="0.1.0")

    @mcp.tool(name="token_owner")
    async def token_owner_t(args: TokenIn):
        """Current owner of a token from the local index."""
        return await token_owner(storage, args.token_id)

    @mcp.tool(name="token_metadata")
    async def token_metadata_t(args: TokenIn):
        """Stored tokenURI and decoded metadata document."""
        return await token_metadata(storage, args.token_id)

    @mcp.tool(name="token_transfers")
    async def token_transfers_t(args: TokenHistoryIn):
        """Transfer history for a token, newest first."""
        return await token_transfers(storage, args.token_id, args.limit)

    @mcp.tool(name="owner_tokens")
    async def owner_tokens_t(args: OwnerIn):
        """Tokens ever indexed for an owner."""
        return await owner_tokens(storage, args.owner, args.limit)

    @mcp.tool(name="sync_status")
    async def sync_status_t() -> dict:
        """Backend kind and last synced block."""
        return await sync_status(storage)

    return mcp


def serve():
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    contract = os.getenv("CONTRACT_ADDRESS")
    if not contract:
        raise SystemExit("Missing CONTRACT_ADDRESS in .env")

    storage = open_storage(IndexerConfig.from_env(), contract)
    asyncio.run(storage.open())
    mcp = build_mcp(storage)

    host = os.getenv("MCP_HOST", "0.0.0.0")
    port = int(os.getenv("MCP_PORT", "8000"))
    # HTTP mode for agents/automation clients
    mcp.run(transport="http", host=host, port=port)


if __name__ == "__main__":
    serve()
