import asyncio

import pytest

from ralphy_client.api import ApiError
from ralphy_client.poller import PolledResource, Poller


def _sequence(*values: object):  # noqa: ANN202
    remaining = list(values)
    calls: list[int] = []

    async def fetch() -> str:
        calls.append(len(calls))
        value = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(value, Exception):
            raise value
        return value

    return fetch, calls


def test_only_changed_values_are_forwarded() -> None:
    fetch, _ = _sequence("a", "a", "b", "b", "a")
    received: list[str] = []
    poller = Poller([PolledResource("progress.txt", fetch, received.append)])

    async def scenario() -> None:
        for _ in range(5):
            await poller.poll_once()

    asyncio.run(scenario())

    assert received == ["a", "b", "a"]


def test_failing_resource_does_not_affect_the_other() -> None:
    failing, _ = _sequence(ApiError("tasks.json", "Failed to load tasks.json (500)", 500))
    healthy, _ = _sequence("progress")
    errors: list[str | None] = []
    changes: list[str] = []
    tasks = PolledResource("tasks.json", failing, lambda _: None, errors.append)
    progress = PolledResource("progress.txt", healthy, changes.append)
    poller = Poller([tasks, progress])

    asyncio.run(poller.poll_once())

    assert errors == ["Failed to load tasks.json (500)"]
    assert tasks.error == "Failed to load tasks.json (500)"
    assert progress.error is None
    assert changes == ["progress"]


def test_error_clears_after_recovery_and_is_reported_once() -> None:
    fetch, _ = _sequence(OSError("boom"), OSError("boom"), "ok")
    errors: list[str | None] = []
    changes: list[str] = []
    poller = Poller([PolledResource("progress.txt", fetch, changes.append, errors.append)])

    async def scenario() -> None:
        for _ in range(3):
            await poller.poll_once()

    asyncio.run(scenario())

    assert errors == ["boom", None]
    assert changes == ["ok"]


def test_timer_keeps_retrying_after_failures() -> None:
    failing, failing_calls = _sequence(RuntimeError("missing"))
    healthy, healthy_calls = _sequence("text")
    poller = Poller(
        [
            PolledResource("tasks.json", failing, lambda _: None),
            PolledResource("progress.txt", healthy, lambda _: None),
        ]
    )

    async def scenario() -> None:
        poller.start(0.01)
        await asyncio.sleep(0.1)
        assert poller.running is True
        poller.stop()

    asyncio.run(scenario())

    assert len(failing_calls) >= 3
    assert len(healthy_calls) >= 3
    assert poller.running is False


def test_in_flight_result_after_stop_is_discarded() -> None:
    gate = asyncio.Event()
    received: list[str] = []

    async def slow_fetch() -> str:
        await gate.wait()
        return "late"

    poller = Poller([PolledResource("tasks.json", slow_fetch, received.append)])

    async def scenario() -> None:
        poller.start(60)
        await asyncio.sleep(0.01)
        poller.stop()
        gate.set()
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert received == []


def test_older_fetch_landing_late_is_dropped() -> None:
    first_gate = asyncio.Event()
    received: list[str] = []
    values = iter(["old", "new"])

    async def fetch() -> str:
        value = next(values)
        if value == "old":
            await first_gate.wait()
        return value

    poller = Poller([PolledResource("progress.txt", fetch, received.append)])

    async def scenario() -> None:
        slow = asyncio.create_task(poller.poll_once())
        await asyncio.sleep(0)
        await poller.poll_once()
        first_gate.set()
        await slow

    asyncio.run(scenario())

    assert received == ["new"]


def test_start_validates_interval_and_double_start() -> None:
    fetch, _ = _sequence("x")
    poller = Poller([PolledResource("progress.txt", fetch, lambda _: None)])

    async def scenario() -> None:
        with pytest.raises(ValueError):
            poller.start(0)
        poller.start(10)
        with pytest.raises(RuntimeError):
            poller.start(10)
        poller.stop()

    asyncio.run(scenario())
