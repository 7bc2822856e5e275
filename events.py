import logging
from collections import deque
from dataclasses import dataclass
from datetime import date
from functools import lru_cache
from typing import Any, Callable, Optional

from schemas import TransactionRecord


logger = logging.getLogger(__name__)

LEDGER_CHANGED = "ledger-changed"
RULE_MATERIALIZED = "recurring-rule-materialized"
LIABILITY_LINKED = "liability-linked"
LIABILITY_UNLINKED = "liability-unlinked"
FORCE_REFRESH_ALL = "force-refresh-all"


@dataclass(frozen=True)
class LedgerChanged:
    previous: Optional[TransactionRecord] = None
    current: Optional[TransactionRecord] = None


@dataclass(frozen=True)
class RuleMaterialized:
    rule_id: str
    date: date


@dataclass(frozen=True)
class LiabilityLinked:
    liability_id: str
    rule_id: str


@dataclass(frozen=True)
class LiabilityUnlinked:
    liability_id: str


@dataclass(frozen=True)
class ForceRefreshAll:
    reason: str = "manual"


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous in-process publish/subscribe.

    Subscribers run in subscription order. An event published while another
    is being delivered is queued and delivered afterwards, so every
    subscriber sees the same total order of events.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._queue: deque[tuple[str, Any]] = deque()
        self._dispatching = False

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, name: str, payload: Any = None) -> None:
        self._queue.append((name, payload))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                event_name, event_payload = self._queue.popleft()
                logger.debug(f"event: name={event_name}")
                for handler in list(self._handlers.get(event_name, ())):
                    handler(event_payload)
        finally:
            self._dispatching = False
            self._queue.clear()


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    return EventBus()
