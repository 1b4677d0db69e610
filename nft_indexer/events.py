"""
Notification fan-out for indexer events.

Kinds:
    sync      SyncProgress, once per historical window and once per poll tick
    transfer  TokenTransfer, once per applied event
    error     IndexerError raised somewhere asynchronous (event, refresh, poll)
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

SYNC     = "sync"
TRANSFER = "transfer"
ERROR    = "error"
KINDS    = (SYNC, TRANSFER, ERROR)

Handler = Callable[[Any], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, kind: str, handler: Handler) -> None:
        if kind not in KINDS:
            raise ValueError(f"unknown event kind {kind!r}; expected one of {KINDS}")
        self._subscribers[kind].append(handler)

    def unsubscribe(self, kind: str, handler: Handler) -> None:
        handlers = self._subscribers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, kind: str, payload: Any) -> None:
        for handler in list(self._subscribers.get(kind, [])):
            try:
                handler(payload)
            except Exception as exc:
                logger.error("%s handler failed: %s", kind, exc)
