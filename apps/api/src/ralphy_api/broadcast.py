from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

STATUS_EVENT = "status"
LOG_EVENT = "log"
KEEPALIVE_COMMENT = ": keepalive\n\n"


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any]

    def encode(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n"


class Subscription:
    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: StreamEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def stream(self, keepalive_seconds: float | None = None) -> AsyncIterator[str]:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE_COMMENT
                continue
            if item is None:
                return
            yield item.encode()


class LogBroadcaster:
    """Bounded log buffer plus live fan-out of status and log events.

    Every subscriber gets its own queue. Publishing never waits on a subscriber: one whose
    queue is full is dropped and the rest keep receiving.
    """

    def __init__(self, max_lines: int = 500, queue_size: int = 2048) -> None:
        if max_lines < 1:
            raise ValueError("max_lines must be >= 1")
        if queue_size <= max_lines:
            raise ValueError("queue_size must exceed max_lines to fit a full replay")
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def lines(self) -> list[str]:
        return list(self._lines)

    def subscribe(self, status: dict[str, Any]) -> Subscription:
        subscription = Subscription(self._queue_size)
        subscription.offer(StreamEvent(STATUS_EVENT, status))
        for line in self._lines:
            subscription.offer(StreamEvent(LOG_EVENT, {"line": line}))
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription.close()

    def append_line(self, line: str) -> None:
        self._lines.append(line)
        self._publish(StreamEvent(LOG_EVENT, {"line": line}))

    def publish_status(self, status: dict[str, Any]) -> None:
        self._publish(StreamEvent(STATUS_EVENT, status))

    def _publish(self, event: StreamEvent) -> None:
        for subscription in list(self._subscribers):
            if subscription.offer(event):
                continue
            logger.warning("dropping log subscriber with %d undelivered events", self._queue_size)
            self.unsubscribe(subscription)
