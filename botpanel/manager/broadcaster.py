"""Fan-out of dashboard updates to connected subscribers."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Set

logger = logging.getLogger("botpanel.broadcaster")


class Subscriber:
    """A dashboard connection. Implementations wrap a websocket."""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class UpdateBroadcaster:
    def __init__(self) -> None:
        self._subscribers: Set[Subscriber] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber: Subscriber) -> bool:
        return subscriber in self._subscribers

    def add(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def remove(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def send_to(self, subscriber: Subscriber, payload: Dict[str, Any]) -> bool:
        """Send to one subscriber; failures are logged and reported as False."""
        if not subscriber.is_open:
            return False
        try:
            await subscriber.send(payload)
        except Exception as exc:
            logger.warning("Failed to send %s to subscriber %r: %s", payload.get("type"), subscriber, exc)
            return False
        return True

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        """Send `payload` to every open subscriber and return the delivery count.

        Closed subscribers are skipped but stay registered until their close
        event removes them.
        """
        targets: List[Subscriber] = [s for s in list(self._subscribers) if s.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send_to(s, payload) for s in targets))
        return sum(1 for ok in results if ok)
