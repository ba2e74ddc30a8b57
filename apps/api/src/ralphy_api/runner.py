from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ralphy_api.broadcast import LogBroadcaster, Subscription
from ralphy_api.schemas import RunnerStatus

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_DRAIN_SECONDS = 2.0
_SUPPORTS_PROCESS_GROUPS = hasattr(os, "killpg")


class RunnerError(Exception):
    pass


class AlreadyRunningError(RunnerError):
    pass


class NotRunningError(RunnerError):
    pass


class InvalidCommandError(RunnerError):
    pass


@dataclass
class _ActiveRun:
    process: asyncio.subprocess.Process
    command: str
    args: list[str]
    cwd: str
    started_at: str
    stop_requested: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)


class RunnerSupervisor:
    """Owns at most one child process and feeds its output to a broadcaster.

    All methods run on the event loop; output readers and the stop escalation are
    background tasks on that same loop, so runner state is only ever touched by one
    coroutine at a time.
    """

    def __init__(self, broadcaster: LogBroadcaster, *, stop_grace_seconds: float = 5.0) -> None:
        self._broadcaster = broadcaster
        self._stop_grace_seconds = stop_grace_seconds
        self._active: _ActiveRun | None = None
        self._starting = False
        self._last_exit_code: int | None = None
        self._last_signal: str | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._active is not None

    def status(self) -> RunnerStatus:
        run = self._active
        if run is None:
            return RunnerStatus(
                running=False,
                last_exit_code=self._last_exit_code,
                last_signal=self._last_signal,
            )
        return RunnerStatus(
            running=True,
            command=run.command,
            args=list(run.args),
            cwd=run.cwd,
            pid=run.process.pid,
            started_at=run.started_at,
        )

    def subscribe(self) -> Subscription:
        return self._broadcaster.subscribe(self._status_payload())

    def unsubscribe(self, subscription: Subscription) -> None:
        self._broadcaster.unsubscribe(subscription)

    async def start(
        self,
        command: str,
        args: list[str] | None = None,
        cwd: str | None = None,
    ) -> RunnerStatus:
        if self._active is not None or self._starting:
            raise AlreadyRunningError("runner is already running; stop it first")
        if not command or not command.strip():
            raise InvalidCommandError("command must not be blank")

        argv = list(args or [])
        workdir = str(Path(cwd).expanduser()) if cwd else os.getcwd()
        invocation = _format_invocation(command.strip(), argv)
        self._last_exit_code = None
        self._last_signal = None

        self._starting = True
        try:
            process = await asyncio.create_subprocess_shell(
                invocation,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                start_new_session=_SUPPORTS_PROCESS_GROUPS,
            )
        except OSError as exc:
            logger.warning("failed to start %r in %s: %s", invocation, workdir, exc)
            self._broadcaster.append_line(f"Failed to start process: {exc}")
            self._broadcaster.publish_status(self._status_payload())
            return self.status()
        finally:
            self._starting = False

        run = _ActiveRun(
            process=process,
            command=command.strip(),
            args=argv,
            cwd=workdir,
            started_at=_utc_now(),
        )
        self._active = run
        logger.info("runner started pid=%s: %s", process.pid, invocation)
        self._broadcaster.append_line(f"$ {invocation}")
        self._broadcaster.publish_status(self._status_payload())
        self._spawn(self._supervise(run))
        return self.status()

    async def stop(self) -> RunnerStatus:
        run = self._active
        if run is None:
            raise NotRunningError("runner is not running")
        if not run.stop_requested:
            run.stop_requested = True
            logger.info("stopping runner pid=%s", run.process.pid)
            _signal_process(run.process, force=False)
            self._spawn(self._escalate(run))
        return self.status()

    async def shutdown(self) -> None:
        run = self._active
        if run is not None:
            _signal_process(run.process, force=True)
            try:
                await asyncio.wait_for(run.exited.wait(), timeout=self._stop_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("runner pid=%s did not exit during shutdown", run.process.pid)
        for task in list(self._tasks):
            task.cancel()

    async def _supervise(self, run: _ActiveRun) -> None:
        process = run.process
        readers = asyncio.gather(self._pump(process.stdout), self._pump(process.stderr))
        returncode = await process.wait()
        try:
            await asyncio.wait_for(readers, timeout=_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("runner pid=%s exited but its output is still open", process.pid)
        self._finish(run, returncode)

    async def _pump(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *complete, pending = pending.split("\n")
            for line in complete:
                self._emit_line(line)
        pending += decoder.decode(b"", final=True)
        self._emit_line(pending)

    def _emit_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if line.strip():
            self._broadcaster.append_line(line)

    def _finish(self, run: _ActiveRun, returncode: int) -> None:
        if returncode < 0:
            signal_name = _signal_name(-returncode)
            self._last_exit_code = None
            self._last_signal = signal_name
            self._broadcaster.append_line(f"Process terminated by signal {signal_name}")
        else:
            self._last_exit_code = returncode
            self._last_signal = None
            self._broadcaster.append_line(f"Process exited with code {returncode}")
        logger.info("runner pid=%s finished returncode=%s", run.process.pid, returncode)
        if self._active is run:
            self._active = None
        run.exited.set()
        self._broadcaster.publish_status(self._status_payload())

    async def _escalate(self, run: _ActiveRun) -> None:
        try:
            await asyncio.wait_for(run.exited.wait(), timeout=self._stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "runner pid=%s ignored termination for %.1fs; killing",
                run.process.pid,
                self._stop_grace_seconds,
            )
            _signal_process(run.process, force=True)

    def _spawn(self, coro) -> None:  # noqa: ANN001
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _status_payload(self) -> dict[str, object]:
        return self.status().model_dump(mode="json")


def _format_invocation(command: str, args: list[str]) -> str:
    if not args:
        return command
    return f"{command} {shlex.join(args)}"


def _signal_process(process: asyncio.subprocess.Process, *, force: bool) -> None:
    if process.returncode is not None:
        return
    try:
        if _SUPPORTS_PROCESS_GROUPS:
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        return


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
