from __future__ import annotations

import json
import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Story(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    priority: int | float = 1
    passes: bool = False
    notes: str | None = None


class Branch(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    stories: list[Story] = Field(default_factory=list)


_DOCUMENT_ADAPTER = TypeAdapter(list[Branch])


class DocumentValidationError(ValueError):
    pass


def canonical_json(value: Any) -> str:
    """Serialize a decoded document the same way every time.

    Keys are sorted and indentation is fixed so that two documents that differ only in
    incidental formatting produce identical text. This is both the on-disk form and the
    snapshot form used for change detection.
    """
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def validate_document(candidate: Any, *, allow_empty: bool = False) -> str | None:
    """Return the first problem found in ``candidate``, or ``None`` when it is valid.

    Load-time callers pass ``allow_empty=True``; saves require at least one branch.
    """
    if not isinstance(candidate, list):
        return "Tasks must be a list of branches."
    if not candidate and not allow_empty:
        return "Add at least one branch before saving."

    for branch_index, branch in enumerate(candidate, start=1):
        if not isinstance(branch, dict):
            return f"Branch {branch_index} must be an object."
        if not _is_filled_text(branch.get("name")):
            return f"Branch {branch_index} needs a name."
        stories = branch.get("stories")
        if not isinstance(stories, list):
            return f"Branch {branch_index} stories must be a list."
        for story_index, story in enumerate(stories, start=1):
            problem = _story_problem(story)
            if problem is not None:
                return f"Story {branch_index}.{story_index} {problem}."
    return None


def ensure_valid_document(candidate: Any, *, allow_empty: bool = False) -> list[Branch]:
    problem = validate_document(candidate, allow_empty=allow_empty)
    if problem is not None:
        raise DocumentValidationError(problem)
    return _DOCUMENT_ADAPTER.validate_python(candidate)


def _story_problem(story: Any) -> str | None:
    if not isinstance(story, dict):
        return "must be an object"
    if not _is_filled_text(story.get("id")):
        return "needs an id"
    if not _is_filled_text(story.get("title")):
        return "needs a title"
    criteria = story.get("acceptanceCriteria")
    if (
        not isinstance(criteria, list)
        or not all(isinstance(item, str) for item in criteria)
        or not any(item.strip() for item in criteria)
    ):
        return "needs at least one acceptance criterion"
    if not _is_positive_number(story.get("priority")):
        return "needs a priority greater than zero"
    if not isinstance(story.get("passes"), bool):
        return "passes must be true or false"
    notes = story.get("notes")
    if notes is not None and not isinstance(notes, str):
        return "notes must be text"
    return None


def _is_filled_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_positive_number(value: Any) -> bool:
    # bool is an int subclass; true is not a priority
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0
