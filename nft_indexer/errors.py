from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NETWORK_ERROR  = "NETWORK_ERROR"
    CONTRACT_ERROR = "CONTRACT_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    INVALID_INPUT  = "INVALID_INPUT"


class IndexerError(Exception):
    """Base error for everything the indexer surfaces to callers.

    `cause` holds the underlying exception (also chained via `raise ... from`).
    """
    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self):
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class NetworkError(IndexerError):
    kind = ErrorKind.NETWORK_ERROR


class RpcTimeoutError(NetworkError):
    """A chain call did not finish before its deadline."""


class ContractError(IndexerError):
    kind = ErrorKind.CONTRACT_ERROR


class DatabaseError(IndexerError):
    kind = ErrorKind.DATABASE_ERROR


class InvalidInputError(IndexerError):
    kind = ErrorKind.INVALID_INPUT
