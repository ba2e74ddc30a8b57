from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ralphy_api.documents import canonical_json

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


class DocumentNotFoundError(StoreError):
    pass


class DocumentParseError(StoreError):
    pass


class TaskFileStore:
    """Whole-file access to the task document and the progress log.

    There is no locking against the automation loop that rewrites these files; the last
    writer wins and conflicts are resolved by the client's reconciliation protocol.
    """

    def __init__(self, tasks_file: Path, progress_file: Path) -> None:
        self._tasks_file = Path(tasks_file)
        self._progress_file = Path(progress_file)

    @property
    def tasks_file(self) -> Path:
        return self._tasks_file

    @property
    def progress_file(self) -> Path:
        return self._progress_file

    def read_tasks(self) -> Any:
        raw = self._read_text(self._tasks_file)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("cannot parse %s: %s", self._tasks_file, exc)
            raise DocumentParseError(
                f"{self._tasks_file.name} is not valid JSON (line {exc.lineno}, column {exc.colno})"
            ) from exc

    def write_tasks(self, document: Any) -> str:
        text = canonical_json(document)
        self._tasks_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._tasks_file.with_name(f"{self._tasks_file.name}.tmp")
        tmp_file.write_text(text, encoding="utf-8")
        tmp_file.replace(self._tasks_file)
        return text

    def read_progress(self) -> str:
        return self._read_text(self._progress_file)

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(f"{path.name} not found at {path}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("cannot read %s: %s", path, exc)
            raise StoreError(f"cannot read {path.name}: {exc}") from exc
