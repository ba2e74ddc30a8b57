import asyncio
from collections.abc import AsyncIterator

from ralphy_client.events import RunnerEvent, StreamParseError, parse_event_stream


async def _lines(text: str) -> AsyncIterator[str]:
    for line in text.split("\n"):
        yield line


def _parse(text: str, errors: list[StreamParseError] | None = None) -> list[RunnerEvent]:
    async def collect() -> list[RunnerEvent]:
        on_error = errors.append if errors is not None else None
        return [event async for event in parse_event_stream(_lines(text), on_error)]

    return asyncio.run(collect())


def test_status_and_log_events_are_decoded() -> None:
    events = _parse(
        "event: status\n"
        'data: {"running":true,"command":"./ralph.sh"}\n'
        "\n"
        "event: log\n"
        'data: {"line":"$ ./ralph.sh"}\n'
        "\n"
    )

    assert [event.event for event in events] == ["status", "log"]
    assert events[0].running is True
    assert events[0].line is None
    assert events[1].line == "$ ./ralph.sh"
    assert events[1].running is None


def test_keepalive_comments_and_crlf_are_ignored() -> None:
    events = _parse(
        ": keepalive\n"
        "\n"
        "event: log\r\n"
        'data: {"line":"hi"}\r\n'
        "\r\n"
        ": keepalive\n"
        "\n"
    )

    assert events == [RunnerEvent(event="log", data={"line": "hi"})]


def test_malformed_payload_is_reported_and_stream_continues() -> None:
    errors: list[StreamParseError] = []

    events = _parse(
        "event: log\n"
        "data: {not json\n"
        "\n"
        "event: log\n"
        "data: [1, 2]\n"
        "\n"
        "event: log\n"
        'data: {"line":"after"}\n'
        "\n",
        errors,
    )

    assert [event.line for event in events] == ["after"]
    assert len(errors) == 2
    assert "not valid JSON" in str(errors[0])
    assert "must be an object" in str(errors[1])


def test_multiline_data_is_joined() -> None:
    events = _parse('event: status\ndata: {"running":\ndata: false}\n\n')

    assert events[0].running is False


def test_truncated_trailing_block_is_dropped() -> None:
    events = _parse('event: log\ndata: {"line":"one"}\n\nevent: log\ndata: {"line":"cut')

    assert [event.line for event in events] == ["one"]


def test_missing_event_name_defaults_to_message() -> None:
    events = _parse('data: {"line":"x"}\n\n')

    assert events[0].event == "message"
    assert events[0].line is None
