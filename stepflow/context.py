"""Parsing of agent output into run context and stories.

Agents report results as plain text. Lines shaped like ``UPPER_KEY: value``
become context variables for later steps; a ``STORIES_JSON:`` block carries
the stories a loop step will iterate over.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Mapping, Optional

from pydantic import ValidationError

from .constants import DEFAULT_MAX_STORIES, STORIES_JSON_MARKER
from .contracts import StoryInput
from .errors import RecoverableParseError

logger = logging.getLogger(__name__)

KEY_VALUE_PATTERN = re.compile(r"^([A-Z_]+):\s*(.+)$")
NEXT_KEY_PATTERN = re.compile(r"^[A-Z_]+:\s")


def merge_context_from_output(
    output: str, existing: Mapping[str, str]
) -> Dict[str, str]:
    """Return a copy of ``existing`` updated with ``KEY: value`` lines of ``output``.

    Keys are stored lower-cased and the last occurrence wins.
    """
    merged = dict(existing)
    for line in (output or "").splitlines():
        match = KEY_VALUE_PATTERN.match(line)
        if not match:
            continue
        key, value = match.group(1), match.group(2).strip()
        if key.startswith("STORIES_JSON"):
            continue
        merged[key.lower()] = value
    return merged


def extract_stories_block(output: str) -> Optional[str]:
    """Return the raw JSON text following ``STORIES_JSON:``, or None if absent."""
    lines = (output or "").splitlines()
    start = next(
        (i for i, line in enumerate(lines) if line.startswith(STORIES_JSON_MARKER)),
        None,
    )
    if start is None:
        return None

    collected = [lines[start][len(STORIES_JSON_MARKER):].strip()]
    for line in lines[start + 1:]:
        if NEXT_KEY_PATTERN.match(line):
            break
        collected.append(line)
    return "\n".join(collected).strip()


def parse_stories_json(
    output: str, max_stories: int = DEFAULT_MAX_STORIES
) -> List[StoryInput]:
    """Parse the STORIES_JSON block of ``output`` into story inputs.

    Returns an empty list when the output has no block.

    Raises:
        RecoverableParseError: If the block is not a valid list of stories.
    """
    text = extract_stories_block(output)
    if text is None:
        return []

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise RecoverableParseError(f"Failed to parse STORIES_JSON: {e}") from e

    if not isinstance(raw, list):
        raise RecoverableParseError("STORIES_JSON must be an array")
    if len(raw) > max_stories:
        raise RecoverableParseError(
            f"STORIES_JSON has {len(raw)} stories, max is {max_stories}"
        )

    stories: List[StoryInput] = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise RecoverableParseError(
                f"STORIES_JSON story at index {index} is not an object"
            )
        try:
            story = StoryInput.model_validate(item)
        except ValidationError as e:
            raise RecoverableParseError(
                f"STORIES_JSON story at index {index} is invalid: {e.errors()[0]['msg']}"
            ) from e
        if story.story_id in seen:
            raise RecoverableParseError(
                f"STORIES_JSON has duplicate story id {story.story_id!r}"
            )
        seen.add(story.story_id)
        stories.append(story)

    logger.debug(f"Parsed {len(stories)} stories from STORIES_JSON")
    return stories
