"""In-process publish/subscribe of row inserts, filtered by a column value."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Dict, List

logger = logging.getLogger(__name__)


class Subscription:
    """Queue of insert events for one ``table`` where ``column == value``."""

    def __init__(self, broker: "RealtimeBroker", table: str, column: str, value: Any) -> None:
        self.broker = broker
        self.table = table
        self.column = column
        self.value = value
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[dict] = asyncio.Queue()

    def matches(self, table: str, record: Dict[str, Any]) -> bool:
        return table == self.table and record.get(self.column) == self.value

    def deliver(self, event: dict) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self) -> dict:
        return await self._queue.get()

    def close(self) -> None:
        self.broker.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[dict]:
        return self

    async def __anext__(self) -> dict:
        return await self.get()


class RealtimeBroker:
    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, column: str, value: Any) -> Subscription:
        """Register a subscription. Must be called from a running event loop."""

        subscription = Subscription(self, table, column, value)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed to %s where %s=%s", table, column, value)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish_insert(self, table: str, record: Dict[str, Any]) -> int:
        """Fan an insert out to matching subscribers; safe from any thread."""

        event = {"event": "INSERT", "table": table, "record": record}
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(table, record)]
        for subscription in targets:
            try:
                subscription.deliver(event)
            except RuntimeError:
                # subscriber's loop is closed
                self.unsubscribe(subscription)
        return len(targets)

    def __len__(self) -> int:
        return len(self._subscriptions)


broker = RealtimeBroker()
