from __future__ import annotations

from pydantic import BaseModel, Field


class RunnerStartRequest(BaseModel):
    command: str = ""
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None


class RunnerStatus(BaseModel):
    running: bool
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    pid: int | None = None
    started_at: str | None = None
    last_exit_code: int | None = None
    last_signal: str | None = None


class OkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    error: str
