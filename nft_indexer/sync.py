"""
Synchronization engine.

Historical catch-up walks [start, height] in windows of `batch_size` blocks;
live polling then repeats the same range logic for new blocks. For every range
the order is fixed: query events -> apply them in chain order -> persist the
cursor -> publish `sync`. A crash mid-range therefore re-processes at most that
range on restart and never skips a block.

Range queries run under a deadline. A timed-out range wider than one block is
split at its midpoint and each half starts with a fresh retry budget; any other
failure is retried with exponential backoff and finally raised as NetworkError.
"""
import asyncio, logging, time
from typing import Awaitable, Callable, List, Optional, Protocol

from . import events
from .config import IndexerConfig
from .db import StorageBackend
from .errors import IndexerError, NetworkError, RpcTimeoutError
from .events import EventBus
from .helpers import backoff_delay, with_timeout
from .log import log_rpc_call, log_sync_progress
from .models import SyncProgress, SyncStatus
from .processor import EventProcessor

logger = logging.getLogger(__name__)

RANGE_QUERY_TIMEOUT = 30.0   # seconds
EVENTS_PER_BATCH    = 20
EVENT_DELAY         = 0.05   # seconds between events
BATCH_DELAY         = 0.5    # seconds between event batches
MAX_RANGE_ATTEMPTS  = 3


class Chain(Protocol):
    async def block_number(self) -> int: ...
    async def get_transfer_events(self, start: int, end: int) -> List[dict]: ...
    async def owner_of(self, token_id: str) -> str: ...
    async def token_uri(self, token_id: str) -> str: ...


class SyncEngine:
    def __init__(self, chain: Chain, storage: StorageBackend, processor: EventProcessor,
                 bus: EventBus, config: IndexerConfig, *,
                 query_timeout: float = RANGE_QUERY_TIMEOUT,
                 event_delay: float = EVENT_DELAY,
                 batch_delay: float = BATCH_DELAY,
                 max_attempts: int = MAX_RANGE_ATTEMPTS,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.chain = chain
        self.storage = storage
        self.processor = processor
        self.bus = bus
        self.config = config
        self.query_timeout = query_timeout
        self.event_delay = event_delay
        self.batch_delay = batch_delay
        self.max_attempts = max_attempts
        self.sleep = sleep

        self.status = SyncStatus.IDLE
        self.last_processed_block: Optional[int] = None
        self._polling = False
        self._stop = asyncio.Event()
        self._live_task: Optional[asyncio.Task] = None

    # ---------- historical ----------
    async def run_historical_sync(self) -> int:
        """Catch up to the current chain height. Returns the cursor afterwards."""
        self.status = SyncStatus.HISTORICAL
        last_synced = await self.storage.get_last_synced_block()
        current = await self._block_number()
        start = max(self.config.start_block, last_synced + 1)

        if start >= current:
            logger.info("No historical data to sync")
            self.last_processed_block = max(last_synced, self.config.start_block - 1)
            return last_synced

        logger.info("Starting historical sync from block %d to %d", start, current)
        for window_start in range(start, current + 1, self.config.batch_size):
            window_end = min(window_start + self.config.batch_size - 1, current)
            await self.process_block_range(window_start, window_end)
            await self.storage.set_sync_state(window_end)
            self.last_processed_block = window_end
            self._publish_progress(window_end, current)

        logger.info("Historical sync completed")
        return self.last_processed_block

    # ---------- ranges ----------
    async def process_block_range(self, start: int, end: int, attempt: int = 0) -> int:
        """Fetch and apply every Transfer in [start, end]. Returns events applied."""
        try:
            started = time.monotonic()
            found = await with_timeout(self.chain.get_transfer_events(start, end), self.query_timeout)
            log_rpc_call("getTransferEvents", int((time.monotonic() - started) * 1000))
        except RpcTimeoutError as e:
            if end > start:
                mid = (start + end) // 2
                logger.warning("Range %d-%d timed out, splitting into %d-%d and %d-%d",
                               start, end, start, mid, mid + 1, end)
                left = await self.process_block_range(start, mid)
                right = await self.process_block_range(mid + 1, end)
                return left + right
            return await self._retry(start, end, attempt, e)
        except Exception as e:
            return await self._retry(start, end, attempt, e)

        return await self._apply_events(found)

    async def _retry(self, start: int, end: int, attempt: int, error: Exception) -> int:
        if attempt + 1 >= self.max_attempts:
            raise NetworkError(f"Failed to process block range {start}-{end}", error) from error
        delay_ms = backoff_delay(attempt)
        logger.warning("Range %d-%d failed (attempt %d/%d): %s; retrying in %dms",
                       start, end, attempt + 1, self.max_attempts, error, delay_ms)
        await self.sleep(delay_ms / 1000)
        return await self.process_block_range(start, end, attempt + 1)

    async def _apply_events(self, found: List[dict]) -> int:
        applied = 0
        for offset in range(0, len(found), EVENTS_PER_BATCH):
            if offset:
                await self.sleep(self.batch_delay)
            for i, event in enumerate(found[offset:offset + EVENTS_PER_BATCH]):
                if i:
                    await self.sleep(self.event_delay)
                try:
                    await self.processor.process(event)
                    applied += 1
                except IndexerError as e:
                    logger.error("Failed to process transfer event: %s", e)
                    self.bus.publish(events.ERROR, e)
                except Exception as e:
                    logger.exception("Failed to process transfer event")
                    self.bus.publish(events.ERROR, NetworkError("Failed to process transfer event", e))
        return applied

    # ---------- live ----------
    async def poll_for_new_blocks(self) -> bool:
        """One live tick. Returns True when a new range was applied."""
        if self._polling:
            logger.debug("Previous poll still running; skipping tick")
            return False
        self._polling = True
        try:
            if self.last_processed_block is None:
                last_synced = await self.storage.get_last_synced_block()
                self.last_processed_block = max(last_synced, self.config.start_block - 1)

            current = await self._block_number()
            if current <= self.last_processed_block:
                return False

            logger.info("Processing new blocks from %d to %d", self.last_processed_block + 1, current)
            await self.process_block_range(self.last_processed_block + 1, current)
            await self.storage.set_sync_state(current)
            self.last_processed_block = current
            self._publish_progress(current, current)
            return True
        except IndexerError as e:
            logger.error("Failed to process new blocks: %s", e)
            self.bus.publish(events.ERROR, e)
            return False
        finally:
            self._polling = False

    async def run_live(self) -> None:
        self.status = SyncStatus.LIVE
        logger.info("Block monitoring started (every %dms)", self.config.poll_interval)
        while not self._stop.is_set():
            try:
                await self.poll_for_new_blocks()
            except Exception as e:
                logger.exception("Failed to process new block")
                self.bus.publish(events.ERROR, NetworkError("Live poll failed", e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.poll_interval / 1000)
            except asyncio.TimeoutError:
                pass

    def start_live(self) -> asyncio.Task:
        if self._live_task is None or self._live_task.done():
            self._stop.clear()
            self._live_task = asyncio.get_running_loop().create_task(self.run_live())
        return self._live_task

    async def stop(self) -> None:
        self._stop.set()
        task, self._live_task = self._live_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.status = SyncStatus.STOPPED

    # ---------- internals ----------
    async def _block_number(self) -> int:
        try:
            started = time.monotonic()
            height = await with_timeout(self.chain.block_number(), self.query_timeout)
        except IndexerError:
            raise
        except Exception as e:
            raise NetworkError("Failed to get current block number", e) from e
        log_rpc_call("blockNumber", int((time.monotonic() - started) * 1000))
        return height

    def _publish_progress(self, current: int, target: int) -> None:
        log_sync_progress(current, target)
        self.bus.publish(events.SYNC, SyncProgress(current=current, target=target))
