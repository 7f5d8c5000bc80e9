"""Tolerant parsers for semi-structured LLM output.

Model responses are free text that is *asked* to follow a format, so every
function here accepts anything and degrades to an empty result instead of
raising.  Supported shapes:

- XML-style tags: ``<tag>...</tag>`` (multi-line, first match wins)
- ``|``-delimited record lines inside a tag block
- loose booleans (``true`` / ``yes`` / ``1``)
"""

from __future__ import annotations

import re
from typing import Any

_TRUTHY = frozenset({"true", "yes", "1"})


def extract_tag(text: Any, tag_name: Any) -> str | None:
    """Return the stripped content of the first ``<tag_name>`` element.

    Returns None when the tag is absent or either argument is not a string.
    """
    if not isinstance(text, str) or not isinstance(tag_name, str) or not tag_name:
        return None
    escaped = re.escape(tag_name)
    match = re.search(rf"<{escaped}>(.*?)</{escaped}>", text, re.DOTALL)
    if match is None:
        return None
    return match.group(1).strip()


def parse_tags(text: Any, tag_names: Any) -> dict[str, str]:
    """Extract several tags at once; only tags that were found are returned."""
    if not isinstance(text, str) or not isinstance(tag_names, list | tuple):
        return {}
    found: dict[str, str] = {}
    for tag in tag_names:
        content = extract_tag(text, tag)
        if content is not None:
            found[tag] = content
    return found


def parse_bool(value: Any) -> bool:
    """Loose boolean: only ``"true"``, ``"yes"`` and ``"1"`` are True.

    Matching is exact (no case folding); anything else, including None,
    is False.
    """
    return isinstance(value, str) and value in _TRUTHY


def iter_lines(block: Any) -> list[str]:
    """Split a block into stripped, non-empty lines."""
    if not isinstance(block, str):
        return []
    return [line.strip() for line in block.split("\n") if line.strip()]


def parse_delimited_lines(
    block: Any,
    fields: int,
    *,
    delimiter: str = "|",
    maxsplit: int | None = None,
) -> list[list[str]]:
    """Parse one record per line, keeping only lines with exactly ``fields`` parts.

    Args:
        block: Multi-line text (typically a tag's content).
        fields: Required number of fields per line.
        delimiter: Field separator.
        maxsplit: When given, split into at most ``maxsplit`` parts so the
            last field may itself contain the delimiter.

    Returns:
        The field lists of well-formed lines, in order.  Fields are not
        stripped beyond the surrounding line whitespace.
    """
    rows: list[list[str]] = []
    for line in iter_lines(block):
        if maxsplit is None:
            parts = line.split(delimiter)
        else:
            parts = line.split(delimiter, maxsplit - 1)
        if len(parts) == fields:
            rows.append(parts)
    return rows
