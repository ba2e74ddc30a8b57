from __future__ import annotations

import re
from collections import Counter
from typing import Any

DEFAULT_STORY_ID = "STORY-001"

_NUMBERED_ID_RE = re.compile(r"^(?P<prefix>.*?)(?P<number>\d+)$")


def existing_story_ids(document: Any) -> list[str]:
    ids: list[str] = []
    if not isinstance(document, list):
        return ids
    for branch in document:
        if not isinstance(branch, dict) or not isinstance(branch.get("stories"), list):
            continue
        for story in branch["stories"]:
            if isinstance(story, dict) and isinstance(story.get("id"), str) and story["id"].strip():
                ids.append(story["id"].strip())
    return ids


def next_story_id(document: Any) -> str:
    """Allocate an id that continues the document's dominant ``<prefix><digits>`` series.

    The prefix used by most numbered ids wins (first seen on a tie). The new number is one
    past the highest in that series, zero-padded to the widest suffix seen, and bumped
    further until it collides with no existing id.
    """
    ids = existing_story_ids(document)
    numbered: list[tuple[str, str]] = []
    for story_id in ids:
        match = _NUMBERED_ID_RE.match(story_id)
        if match is not None:
            numbered.append((match.group("prefix"), match.group("number")))
    if not numbered:
        return DEFAULT_STORY_ID

    counts = Counter(prefix for prefix, _ in numbered)
    top = max(counts.values())
    prefix = next(prefix for prefix, _ in numbered if counts[prefix] == top)
    digits = [number for candidate, number in numbered if candidate == prefix]
    width = max(len(number) for number in digits)
    number = max(int(number) for number in digits) + 1

    taken = set(ids)
    candidate = f"{prefix}{number:0{width}d}"
    while candidate in taken:
        number += 1
        candidate = f"{prefix}{number:0{width}d}"
    return candidate
