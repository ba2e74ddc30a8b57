from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ralphy_api.documents import Story, canonical_json, validate_document

from ralphy_client.story_ids import next_story_id

logger = logging.getLogger(__name__)


class ReconcilerError(Exception):
    pass


class SaveBlockedError(ReconcilerError):
    pass


class DocumentLockedError(SaveBlockedError):
    pass


@dataclass(frozen=True)
class StoryRef:
    branch_index: int
    story_index: int


class Reconciler:
    """Keeps an editable working copy in step with a document another process rewrites.

    ``dirty`` is derived by comparing the canonical form of the working copy with the last
    server snapshot after every change, so reverting an edit clears it. A server change that
    arrives while dirty locks the working copy; only :meth:`reload` unlocks it, and it does
    so by discarding local edits in favour of the latest snapshot.
    """

    def __init__(self) -> None:
        self._server_snapshot: str | None = None
        self._working: Any = []
        self._dirty = False
        self._locked = False
        self._selected: StoryRef | None = None
        self._load_error: str | None = None
        self._save_base: str | None = None

    @property
    def loaded(self) -> bool:
        return self._server_snapshot is not None

    @property
    def server_snapshot(self) -> str | None:
        return self._server_snapshot

    @property
    def working_copy(self) -> Any:
        return copy.deepcopy(self._working)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def selected(self) -> StoryRef | None:
        return self._selected

    @property
    def load_error(self) -> str | None:
        return self._load_error

    def receive_document(self, document: Any) -> None:
        self.receive_snapshot(canonical_json(document))

    def receive_snapshot(self, snapshot: str) -> None:
        if snapshot == self._server_snapshot:
            return
        self._server_snapshot = snapshot
        if self._locked:
            return
        if not self._dirty:
            self._adopt(snapshot)
            return
        logger.info("tasks changed on disk while editing; editor locked until reload")
        self._locked = True

    def reload(self) -> None:
        if self._server_snapshot is None:
            return
        self._adopt(self._server_snapshot)

    def validation_error(self) -> str | None:
        return validate_document(self._working)

    def can_save(self) -> bool:
        return not self._locked and self._dirty and self.validation_error() is None

    def prepare_save(self) -> Any:
        if self._locked:
            raise DocumentLockedError("External changes detected; reload from disk before saving.")
        if not self._dirty:
            raise SaveBlockedError("No unsaved changes.")
        problem = self.validation_error()
        if problem is not None:
            raise SaveBlockedError(problem)
        self._save_base = self._server_snapshot
        return copy.deepcopy(self._working)

    def mark_saved(self, document: Any) -> None:
        base, self._save_base = self._save_base, None
        if self._locked or self._server_snapshot != base:
            # a newer snapshot arrived while the write was in flight; it stays the reload target
            logger.info("tasks changed on disk during save; keeping the newer snapshot")
            return
        self._server_snapshot = canonical_json(document)
        self._recompute_dirty()

    def save(self, write: Callable[[Any], None]) -> None:
        document = self.prepare_save()
        write(document)
        self.mark_saved(document)

    def select(self, branch_index: int, story_index: int) -> None:
        self._story(branch_index, story_index)
        self._selected = StoryRef(branch_index, story_index)

    def selected_story(self) -> dict[str, Any] | None:
        if self._selected is None:
            return None
        return copy.deepcopy(self._story(self._selected.branch_index, self._selected.story_index))

    def replace_working_copy(self, document: Any) -> None:
        self._ensure_editable()
        self._working = copy.deepcopy(document)
        self._ensure_selection()
        self._recompute_dirty()

    def set_story_field(self, branch_index: int, story_index: int, field: str, value: Any) -> None:
        self._ensure_editable()
        story = self._story(branch_index, story_index)
        if value is None and field == "notes":
            story.pop("notes", None)
        else:
            story[field] = copy.deepcopy(value)
        self._recompute_dirty()

    def rename_branch(self, branch_index: int, name: str) -> None:
        self._ensure_editable()
        self._branch(branch_index)["name"] = name
        self._recompute_dirty()

    def add_branch(self, name: str) -> int:
        self._ensure_editable()
        if not isinstance(self._working, list):
            raise ReconcilerError("Tasks must be a list of branches.")
        self._working.append({"name": name, "stories": []})
        self._recompute_dirty()
        return len(self._working) - 1

    def add_story(self, branch_index: int, title: str = "") -> StoryRef:
        self._ensure_editable()
        branch = self._branch(branch_index)
        stories = branch.setdefault("stories", [])
        if not isinstance(stories, list):
            raise ReconcilerError(f"Branch {branch_index + 1} stories must be a list.")
        priorities = [
            story["priority"]
            for story in stories
            if isinstance(story, dict)
            and isinstance(story.get("priority"), (int, float))
            and not isinstance(story.get("priority"), bool)
        ]
        story = Story.model_construct(
            id=next_story_id(self._working),
            title=title,
            acceptance_criteria=[],
            priority=int(max(priorities, default=0)) + 1,
            passes=False,
        )
        stories.append(story.model_dump(by_alias=True, exclude_none=True))
        ref = StoryRef(branch_index, len(stories) - 1)
        self._selected = ref
        self._recompute_dirty()
        return ref

    def _adopt(self, snapshot: str) -> None:
        self._working = json.loads(snapshot)
        self._dirty = False
        self._locked = False
        self._load_error = validate_document(self._working, allow_empty=True)
        self._ensure_selection()

    def _recompute_dirty(self) -> None:
        self._dirty = canonical_json(self._working) != self._server_snapshot

    def _ensure_editable(self) -> None:
        if self._locked:
            raise DocumentLockedError("External changes detected; reload from disk before editing.")

    def _ensure_selection(self) -> None:
        if self._selected is not None and self._has_story(self._selected):
            return
        self._selected = None
        if not isinstance(self._working, list):
            return
        for branch_index, branch in enumerate(self._working):
            if isinstance(branch, dict) and isinstance(branch.get("stories"), list) and branch["stories"]:
                self._selected = StoryRef(branch_index, 0)
                return

    def _has_story(self, ref: StoryRef) -> bool:
        try:
            self._story(ref.branch_index, ref.story_index)
        except IndexError:
            return False
        return True

    def _branch(self, branch_index: int) -> dict[str, Any]:
        if not isinstance(self._working, list) or not 0 <= branch_index < len(self._working):
            raise IndexError(f"Branch {branch_index + 1} does not exist.")
        branch = self._working[branch_index]
        if not isinstance(branch, dict):
            raise IndexError(f"Branch {branch_index + 1} does not exist.")
        return branch

    def _story(self, branch_index: int, story_index: int) -> dict[str, Any]:
        stories = self._branch(branch_index).get("stories")
        if not isinstance(stories, list) or not 0 <= story_index < len(stories):
            raise IndexError(f"Story {branch_index + 1}.{story_index + 1} does not exist.")
        story = stories[story_index]
        if not isinstance(story, dict):
            raise IndexError(f"Story {branch_index + 1}.{story_index + 1} does not exist.")
        return story
