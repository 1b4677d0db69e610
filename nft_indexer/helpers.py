import asyncio, time
from typing import Awaitable, TypeVar

from web3 import AsyncWeb3

from .errors import RpcTimeoutError

T = TypeVar("T")

BACKOFF_BASE_MS = 1000
BACKOFF_MAX_MS  = 10_000

# ---------------- hex / address ----------------
def to_hex(x):
    if x is None: return None
    if isinstance(x, (bytes, bytearray)): return "0x" + bytes(x).hex()
    if isinstance(x, int): return hex(x)
    s = str(x)
    return s if s.startswith("0x") else "0x" + s

def to_addr(x):
    if x is None: return None
    return AsyncWeb3.to_checksum_address(x)

def topic_to_addr(topic_hex: str) -> str:
    # topics are 32-byte values; address is the last 20 bytes
    return AsyncWeb3.to_checksum_address("0x" + topic_hex[-40:])

def topic_to_u256(topic_hex: str) -> int:
    return int(topic_hex, 16)

# ---------------- time ----------------
def now_ms() -> int:
    return int(time.time() * 1000)

# ---------------- retry ----------------
async def with_timeout(op: Awaitable[T], seconds: float) -> T:
    """
    Race `op` against a timer. If the timer wins, raise RpcTimeoutError;
    otherwise return the result or propagate the operation's own exception.
    """
    try:
        return await asyncio.wait_for(op, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise RpcTimeoutError(f"operation timed out after {seconds}s") from e

def backoff_delay(attempt: int) -> int:
    """Milliseconds to wait before attempt `attempt + 1`."""
    return min((2 ** attempt) * BACKOFF_BASE_MS, BACKOFF_MAX_MS)
