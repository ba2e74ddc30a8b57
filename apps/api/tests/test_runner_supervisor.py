import asyncio
import json
import sys
from pathlib import Path

import pytest

from ralphy_api.broadcast import KEEPALIVE_COMMENT, LogBroadcaster
from ralphy_api.runner import (
    AlreadyRunningError,
    InvalidCommandError,
    NotRunningError,
    RunnerSupervisor,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def _supervisor(**kwargs) -> tuple[RunnerSupervisor, LogBroadcaster]:  # noqa: ANN003
    broadcaster = LogBroadcaster(max_lines=50, queue_size=100)
    return RunnerSupervisor(broadcaster, **kwargs), broadcaster


async def _wait_for_idle(supervisor: RunnerSupervisor, timeout_seconds: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_seconds
    while supervisor.running:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("runner did not exit in time")
        await asyncio.sleep(0.02)


def test_echo_runs_then_reports_exit_code() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor()
        await supervisor.start("echo hi")
        during = supervisor.status()
        await _wait_for_idle(supervisor)
        return during, supervisor.status(), broadcaster.lines()

    during, after, lines = asyncio.run(scenario())

    assert during.running is True
    assert during.command == "echo hi"
    assert during.started_at is not None
    assert during.pid is not None
    assert after.running is False
    assert after.command is None
    assert after.last_exit_code == 0
    assert lines[0] == "$ echo hi"
    assert "hi" in lines
    assert lines[-1] == "Process exited with code 0"


def test_args_are_quoted_into_invocation() -> None:
    async def scenario() -> list[str]:
        supervisor, broadcaster = _supervisor()
        await supervisor.start("printf", ["%s\\n", "two words"])
        await _wait_for_idle(supervisor)
        return broadcaster.lines()

    lines = asyncio.run(scenario())

    assert lines[0] == "$ printf '%s\\n' 'two words'"
    assert "two words" in lines


def test_stdout_and_stderr_lines_are_both_buffered() -> None:
    async def scenario() -> list[str]:
        supervisor, broadcaster = _supervisor()
        await supervisor.start("echo out; echo err 1>&2; exit 3")
        await _wait_for_idle(supervisor)
        return broadcaster.lines()

    lines = asyncio.run(scenario())

    assert "out" in lines
    assert "err" in lines
    assert lines[-1] == "Process exited with code 3"


def test_blank_lines_skipped_and_partial_line_flushed() -> None:
    async def scenario() -> list[str]:
        supervisor, broadcaster = _supervisor()
        await supervisor.start("printf 'first\\r\\n\\n\\nsecond'")
        await _wait_for_idle(supervisor)
        return broadcaster.lines()

    lines = asyncio.run(scenario())

    assert lines[1:] == ["first", "second", "Process exited with code 0"]


def test_start_while_running_fails_without_second_process() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor(stop_grace_seconds=1.0)
        await supervisor.start("sleep 30")
        first_pid = supervisor.status().pid
        with pytest.raises(AlreadyRunningError):
            await supervisor.start("echo second")
        still = supervisor.status()
        await supervisor.stop()
        await _wait_for_idle(supervisor)
        return first_pid, still, broadcaster.lines()

    first_pid, still, lines = asyncio.run(scenario())

    assert still.pid == first_pid
    assert still.command == "sleep 30"
    assert not any("second" in line for line in lines)


def test_blank_command_is_rejected() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor()
        with pytest.raises(InvalidCommandError):
            await supervisor.start("   ")
        return supervisor.status(), broadcaster.lines()

    status, lines = asyncio.run(scenario())

    assert status.running is False
    assert lines == []


def test_stop_without_process_fails_and_changes_nothing() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor()
        with pytest.raises(NotRunningError):
            await supervisor.stop()
        return supervisor.status(), broadcaster.lines()

    status, lines = asyncio.run(scenario())

    assert status.running is False
    assert status.last_exit_code is None
    assert lines == []


def test_stop_terminates_gracefully() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor(stop_grace_seconds=5.0)
        await supervisor.start("sleep 30")
        returned = await supervisor.stop()
        await _wait_for_idle(supervisor)
        return returned, supervisor.status(), broadcaster.lines()

    returned, after, lines = asyncio.run(scenario())

    assert returned.running is True
    assert after.running is False
    assert after.last_signal == "SIGTERM"
    assert lines[-1] == "Process terminated by signal SIGTERM"


def test_stop_escalates_to_kill_after_grace_period() -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor(stop_grace_seconds=0.3)
        await supervisor.start("trap '' TERM; echo ready; sleep 30")
        while "ready" not in broadcaster.lines():
            await asyncio.sleep(0.02)
        await supervisor.stop()
        await asyncio.sleep(0.1)
        assert supervisor.running is True
        await _wait_for_idle(supervisor)
        return supervisor.status(), broadcaster.lines()

    after, lines = asyncio.run(scenario())

    assert after.last_signal == "SIGKILL"
    assert lines[-1] == "Process terminated by signal SIGKILL"


def test_spawn_failure_becomes_log_line(tmp_path: Path) -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor()
        await supervisor.start("echo hi", cwd=str(tmp_path / "missing"))
        return supervisor.status(), broadcaster.lines()

    status, lines = asyncio.run(scenario())

    assert status.running is False
    assert len(lines) == 1
    assert lines[0].startswith("Failed to start process:")


def test_runs_in_requested_directory(tmp_path: Path) -> None:
    async def scenario():
        supervisor, broadcaster = _supervisor()
        await supervisor.start("pwd", cwd=str(tmp_path))
        cwd = supervisor.status().cwd
        await _wait_for_idle(supervisor)
        return cwd, broadcaster.lines()

    cwd, lines = asyncio.run(scenario())

    assert cwd == str(tmp_path)
    assert str(tmp_path.resolve()) in lines or str(tmp_path) in lines


def test_subscriber_sees_status_backlog_and_live_events_in_order() -> None:
    async def scenario() -> list[tuple[str, dict]]:
        supervisor, broadcaster = _supervisor()
        await supervisor.start("echo one; sleep 0.2; echo two")
        while "one" not in broadcaster.lines():
            await asyncio.sleep(0.01)
        subscription = supervisor.subscribe()
        events: list[tuple[str, dict]] = []
        async for chunk in subscription.stream(keepalive_seconds=2.0):
            if chunk == KEEPALIVE_COMMENT:
                continue
            event_line, data_line, *_ = chunk.split("\n")
            name = event_line.removeprefix("event: ")
            data = json.loads(data_line.removeprefix("data: "))
            events.append((name, data))
            if name == "status" and data["running"] is False:
                break
        supervisor.unsubscribe(subscription)
        return events

    events = asyncio.run(scenario())

    assert events[0][0] == "status"
    assert events[0][1]["running"] is True
    lines = [data["line"] for name, data in events if name == "log"]
    assert lines == ["$ echo one; sleep 0.2; echo two", "one", "two", "Process exited with code 0"]
    assert events[-1][0] == "status"
    assert events[-1][1]["running"] is False
