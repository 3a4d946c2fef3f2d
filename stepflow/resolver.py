"""Placeholder expansion for step input templates."""

from __future__ import annotations

import re
from typing import Mapping

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")


def missing_marker(key: str) -> str:
    return f"[missing: {key}]"


def lookup(context: Mapping[str, str], key: str) -> str | None:
    """Find ``key`` verbatim in ``context``, falling back to its lower-cased form."""
    if key in context:
        return context[key]
    lowered = key.lower()
    if lowered in context:
        return context[lowered]
    return None


def resolve_template(template: str, context: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders with values from ``context``.

    Unknown names render as ``[missing: name]`` so that a step can still be
    handed out with partially resolved input. Substituted values are not
    expanded again.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = lookup(context, key)
        return missing_marker(key) if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template or "")
