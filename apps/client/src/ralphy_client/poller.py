from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2.5


@dataclass
class PolledResource:
    name: str
    fetch: Callable[[], Awaitable[str]]
    on_change: Callable[[str], None]
    on_error: Callable[[str | None], None] | None = None
    last_value: str | None = field(default=None, init=False)
    error: str | None = field(default=None, init=False)
    _issued: int = field(default=0, init=False, repr=False)
    _applied: int = field(default=0, init=False, repr=False)


class Poller:
    """Fetches each resource on a fixed interval and forwards only changed values.

    Resources are independent: one failing never delays or stops another, and failures are
    simply retried on the next tick. Results that land after :meth:`stop`, or after a newer
    fetch of the same resource already landed, are dropped.
    """

    def __init__(self, resources: Sequence[PolledResource]) -> None:
        self._resources = list(resources)
        self._generation = 0
        self._timer: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def resources(self) -> list[PolledResource]:
        return list(self._resources)

    def start(self, interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.running:
            raise RuntimeError("poller is already running")
        self._generation += 1
        self._timer = asyncio.get_running_loop().create_task(
            self._tick_forever(interval_seconds, self._generation)
        )

    def stop(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def poll_once(self) -> None:
        generation = self._generation
        await asyncio.gather(*(self._poll(resource, generation) for resource in self._resources))

    async def _tick_forever(self, interval_seconds: float, generation: int) -> None:
        while True:
            for resource in self._resources:
                task = asyncio.get_running_loop().create_task(self._poll(resource, generation))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
            await asyncio.sleep(interval_seconds)

    async def _poll(self, resource: PolledResource, generation: int) -> None:
        resource._issued += 1
        ticket = resource._issued
        try:
            value = await resource.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if self._is_stale(resource, generation, ticket):
                return
            message = str(exc) or f"Failed to load {resource.name}"
            logger.debug("poll of %s failed: %s", resource.name, message)
            self._set_error(resource, message)
            return

        if self._is_stale(resource, generation, ticket):
            return
        resource._applied = ticket
        self._set_error(resource, None)
        if value != resource.last_value:
            resource.last_value = value
            resource.on_change(value)

    def _is_stale(self, resource: PolledResource, generation: int, ticket: int) -> bool:
        return generation != self._generation or ticket < resource._applied

    def _set_error(self, resource: PolledResource, message: str | None) -> None:
        if message == resource.error:
            return
        resource.error = message
        if resource.on_error is not None:
            resource.on_error(message)
