import asyncio, logging
from typing import Any, Callable, Dict, Mapping, Set

from . import events
from .cache import IndexerCache
from .db import StorageBackend
from .errors import IndexerError, InvalidInputError, NetworkError
from .events import EventBus
from .helpers import now_ms, with_timeout
from .metadata import MetadataResolver
from .models import TokenTransfer

logger = logging.getLogger(__name__)

METADATA_REFRESH_TIMEOUT = 5.0  # seconds
EVENT_ARGS = frozenset({"from", "to", "tokenId"})


def parse_transfer(event: Mapping[str, Any], timestamp: int) -> TokenTransfer:
    args = event.get("args") if isinstance(event, Mapping) else None
    if not isinstance(args, Mapping) or set(args.keys()) != EVENT_ARGS:
        raise InvalidInputError("Invalid event arguments")
    if event.get("blockNumber") is None or not event.get("transactionHash"):
        raise InvalidInputError("Event is missing its block number or transaction hash")
    try:
        return TokenTransfer(
            token_id=str(args["tokenId"]),
            from_addr=str(args["from"]),
            to=str(args["to"]),
            block_number=int(event["blockNumber"]),
            transaction_hash=str(event["transactionHash"]),
            timestamp=timestamp,
        )
    except (TypeError, ValueError) as e:
        raise InvalidInputError("Invalid event arguments", e) from e


class EventProcessor:
    """
    Applies one decoded Transfer event: store, ownership cache, `transfer`
    notification, then a tracked metadata refresh in the background.
    """

    def __init__(self, storage: StorageBackend, cache: IndexerCache, bus: EventBus,
                 metadata: MetadataResolver, refresh_timeout: float = METADATA_REFRESH_TIMEOUT,
                 clock: Callable[[], int] = now_ms):
        self.storage = storage
        self.cache = cache
        self.bus = bus
        self.metadata = metadata
        self.refresh_timeout = refresh_timeout
        self.clock = clock
        self._pending: Dict[str, asyncio.Task] = {}

    async def process(self, event: Mapping[str, Any]) -> TokenTransfer:
        transfer = parse_transfer(event, self.clock())

        await self.storage.record_transfer(transfer)
        self.cache.ownership.set(transfer.token_id, transfer.to)

        self.bus.publish(events.TRANSFER, transfer)
        logger.debug("Transfer Event - TokenID: %s, From: %s, To: %s, Block: %d",
                     transfer.token_id, transfer.from_addr, transfer.to, transfer.block_number)

        self.schedule_refresh(transfer.token_id)
        return transfer

    # ---------- deferred metadata ----------
    def schedule_refresh(self, token_id: str) -> None:
        if token_id in self._pending:
            return
        task = asyncio.get_running_loop().create_task(self._refresh(token_id))
        self._pending[token_id] = task
        task.add_done_callback(lambda _t, tid=token_id: self._pending.pop(tid, None))

    async def _refresh(self, token_id: str) -> None:
        try:
            await with_timeout(self.metadata.get(token_id), self.refresh_timeout)
        except asyncio.CancelledError:
            raise
        except IndexerError as e:
            logger.warning("Metadata refresh for token %s failed: %s", token_id, e)
            self.bus.publish(events.ERROR, e)
        except Exception as e:
            logger.warning("Metadata refresh for token %s failed: %s", token_id, e)
            self.bus.publish(events.ERROR, NetworkError(f"Metadata refresh for token {token_id} failed", e))

    @property
    def pending(self) -> Set[str]:
        return set(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled refresh to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def cancel_pending(self) -> None:
        tasks = list(self._pending.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
