from __future__ import annotations

from ralphy_api.documents import canonical_json

from ralphy_client.api import PROGRESS_RESOURCE, TASKS_RESOURCE, RalphyApiClient
from ralphy_client.poller import DEFAULT_POLL_INTERVAL_SECONDS, PolledResource, Poller
from ralphy_client.reconciler import Reconciler


class EditorSession:
    """Poller, reconciler and API client wired together for a presentation layer."""

    def __init__(
        self,
        client: RalphyApiClient,
        *,
        reconciler: Reconciler | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._client = client
        self._poll_interval_seconds = poll_interval_seconds
        self.reconciler = reconciler or Reconciler()
        self.progress = ""
        self.tasks_error: str | None = None
        self.progress_error: str | None = None
        self._poller = Poller(
            [
                PolledResource(
                    name=TASKS_RESOURCE,
                    fetch=self._fetch_tasks_snapshot,
                    on_change=self.reconciler.receive_snapshot,
                    on_error=self._set_tasks_error,
                ),
                PolledResource(
                    name=PROGRESS_RESOURCE,
                    fetch=client.fetch_progress,
                    on_change=self._set_progress,
                    on_error=self._set_progress_error,
                ),
            ]
        )

    @property
    def polling(self) -> bool:
        return self._poller.running

    async def start(self) -> None:
        await self._poller.poll_once()
        self._poller.start(self._poll_interval_seconds)

    def stop(self) -> None:
        self._poller.stop()

    async def refresh(self) -> None:
        await self._poller.poll_once()

    async def save(self) -> None:
        document = self.reconciler.prepare_save()
        await self._client.save_tasks(document)
        self.reconciler.mark_saved(document)

    def reload(self) -> None:
        self.reconciler.reload()

    async def _fetch_tasks_snapshot(self) -> str:
        return canonical_json(await self._client.fetch_tasks())

    def _set_progress(self, text: str) -> None:
        self.progress = text

    def _set_tasks_error(self, message: str | None) -> None:
        self.tasks_error = message

    def _set_progress_error(self, message: str | None) -> None:
        self.progress_error = message
