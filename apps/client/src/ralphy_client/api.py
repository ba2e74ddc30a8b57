from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from ralphy_client.events import RunnerEvent, StreamParseError, parse_event_stream

DEFAULT_BASE_URL = "http://localhost:7258"
TASKS_RESOURCE = "tasks.json"
PROGRESS_RESOURCE = "progress.txt"
RUNNER_RESOURCE = "runner"


class ApiError(Exception):
    def __init__(self, resource: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.resource = resource
        self.status_code = status_code


class RalphyApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Cache-Control": "no-store"},
        )

    async def __aenter__(self) -> "RalphyApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_tasks(self) -> Any:
        response = await self._request("GET", "/tasks", resource=TASKS_RESOURCE, action="load")
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(TASKS_RESOURCE, f"Failed to load {TASKS_RESOURCE} (invalid JSON response)") from exc

    async def fetch_progress(self) -> str:
        response = await self._request("GET", "/progress", resource=PROGRESS_RESOURCE, action="load")
        return response.text

    async def save_tasks(self, document: Any) -> None:
        await self._request("PUT", "/tasks", resource=TASKS_RESOURCE, action="save", json=document)

    async def runner_status(self) -> dict[str, Any]:
        response = await self._request("GET", "/runner/status", resource=RUNNER_RESOURCE, action="load")
        return response.json()

    async def start_runner(self, command: str, args: list[str] | None = None, cwd: str | None = None) -> None:
        payload: dict[str, Any] = {"command": command, "args": list(args or [])}
        if cwd is not None:
            payload["cwd"] = cwd
        await self._request("POST", "/runner/start", resource=RUNNER_RESOURCE, action="start", json=payload)

    async def stop_runner(self) -> None:
        await self._request("POST", "/runner/stop", resource=RUNNER_RESOURCE, action="stop")

    async def runner_events(
        self,
        on_error: Callable[[StreamParseError], None] | None = None,
    ) -> AsyncIterator[RunnerEvent]:
        """Yield the status/backlog/live events of ``/runner/logs`` until the server closes."""
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream("GET", "/runner/logs", timeout=timeout) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ApiError(
                        RUNNER_RESOURCE,
                        _failure_message("stream", RUNNER_RESOURCE, response),
                        response.status_code,
                    )
                async for event in parse_event_stream(response.aiter_lines(), on_error):
                    yield event
        except httpx.HTTPError as exc:
            raise ApiError(RUNNER_RESOURCE, f"Failed to stream {RUNNER_RESOURCE} logs: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        resource: str,
        action: str,
        json: Any = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise ApiError(resource, f"Failed to {action} {resource}: {exc}") from exc
        if response.status_code >= 400:
            raise ApiError(resource, _failure_message(action, resource, response), response.status_code)
        return response


def _failure_message(action: str, resource: str, response: httpx.Response) -> str:
    message = f"Failed to {action} {resource} ({response.status_code})"
    try:
        body = response.json()
    except ValueError:
        return message
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        return f"{message}: {body['error']}"
    return message
