from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class StreamParseError(ValueError):
    pass


@dataclass(frozen=True)
class RunnerEvent:
    event: str
    data: dict[str, Any]

    @property
    def line(self) -> str | None:
        if self.event != "log":
            return None
        value = self.data.get("line")
        return value if isinstance(value, str) else None

    @property
    def running(self) -> bool | None:
        if self.event != "status":
            return None
        return bool(self.data.get("running"))


async def parse_event_stream(
    lines: AsyncIterable[str],
    on_error: Callable[[StreamParseError], None] | None = None,
) -> AsyncIterator[RunnerEvent]:
    """Turn ``text/event-stream`` lines into runner events.

    A block whose data is not a JSON object is reported through ``on_error`` and skipped;
    the stream itself keeps going. Comment lines (keep-alives) are ignored, and a block cut
    off by the end of the stream is dropped.
    """
    event_name = "message"
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data_lines:
                try:
                    yield _decode_event(event_name, data_lines)
                except StreamParseError as exc:
                    logger.warning("skipping malformed %s event: %s", event_name, exc)
                    if on_error is not None:
                        on_error(exc)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value
        elif name == "data":
            data_lines.append(value)


def _decode_event(event_name: str, data_lines: list[str]) -> RunnerEvent:
    raw = "\n".join(data_lines)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StreamParseError(f"{event_name} event payload is not valid JSON: {raw[:80]!r}") from exc
    if not isinstance(data, dict):
        raise StreamParseError(f"{event_name} event payload must be an object")
    return RunnerEvent(event=event_name, data=data)
