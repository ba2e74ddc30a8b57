from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TASKS_FILE = "scripts/ralph/tasks.json"
DEFAULT_PROGRESS_FILE = "scripts/ralph/progress.txt"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7258
DEFAULT_LOG_BUFFER_LINES = 500
DEFAULT_STOP_GRACE_SECONDS = 5.0
DEFAULT_MAX_BODY_BYTES = 2 * 1024 * 1024
DEFAULT_STREAM_KEEPALIVE_SECONDS = 15.0
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 2048


@dataclass(frozen=True)
class Settings:
    tasks_file: Path = Path(DEFAULT_TASKS_FILE)
    progress_file: Path = Path(DEFAULT_PROGRESS_FILE)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_buffer_lines: int = DEFAULT_LOG_BUFFER_LINES
    stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    stream_keepalive_seconds: float = DEFAULT_STREAM_KEEPALIVE_SECONDS
    subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.log_buffer_lines < 1:
            raise ValueError("log_buffer_lines must be >= 1")
        if self.subscriber_queue_size <= self.log_buffer_lines:
            # a new subscriber must fit the status event plus the full replay
            raise ValueError("subscriber_queue_size must exceed log_buffer_lines")
        if self.stop_grace_seconds <= 0:
            raise ValueError("stop_grace_seconds must be > 0")
        if self.max_body_bytes < 1:
            raise ValueError("max_body_bytes must be >= 1")


def load_settings() -> Settings:
    return Settings(
        tasks_file=Path(_env_or_default("RALPHY_TASKS_FILE", DEFAULT_TASKS_FILE)).expanduser(),
        progress_file=Path(_env_or_default("RALPHY_PROGRESS_FILE", DEFAULT_PROGRESS_FILE)).expanduser(),
        host=_env_or_default("RALPHY_HOST", DEFAULT_HOST),
        port=_env_int("RALPHY_PORT", DEFAULT_PORT),
        log_buffer_lines=_env_int("RALPHY_LOG_BUFFER_LINES", DEFAULT_LOG_BUFFER_LINES),
        stop_grace_seconds=_env_float("RALPHY_STOP_GRACE_SECONDS", DEFAULT_STOP_GRACE_SECONDS),
        max_body_bytes=_env_int("RALPHY_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES),
        stream_keepalive_seconds=_env_float(
            "RALPHY_STREAM_KEEPALIVE_SECONDS",
            DEFAULT_STREAM_KEEPALIVE_SECONDS,
        ),
        subscriber_queue_size=_env_int("RALPHY_SUBSCRIBER_QUEUE_SIZE", DEFAULT_SUBSCRIBER_QUEUE_SIZE),
        log_level=_env_or_default("RALPHY_LOG_LEVEL", "INFO").upper(),
    )


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_int(name: str, default: int) -> int:
    raw = _env_or_default(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = _env_or_default(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
