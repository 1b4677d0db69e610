from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Stored documents use camelCase keys so the embedded store stays readable by
# tools that already know its layout.
class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, data: str):
        return cls.model_validate_json(data)


class TokenOwnership(_Record):
    token_id: str = Field(alias="tokenId")
    owner: str
    timestamp: int


class TokenTransfer(_Record):
    token_id: str = Field(alias="tokenId")
    from_addr: str = Field(alias="from")
    to: str
    block_number: int = Field(alias="blockNumber")
    transaction_hash: str = Field(alias="transactionHash")
    timestamp: int


class TokenMetadata(_Record):
    token_id: str = Field(alias="tokenId")
    uri: str
    document: Optional[Dict[str, Any]] = Field(default=None, alias="metadata")
    last_updated: int = Field(alias="lastUpdated")


class SyncProgress(_Record):
    current: int
    target: int


class SyncStatus(str, Enum):
    IDLE       = "idle"
    HISTORICAL = "historical"
    LIVE       = "live"
    STOPPED    = "stopped"
