"""Utilities to normalize status memos and their project tags."""

from __future__ import annotations

import re
from typing import Optional

_PROJECT_TAG_PATTERN = re.compile(r"^\[([^\]]+)\]\s*(.*)$", re.DOTALL)
_WHITESPACE_PATTERN = re.compile(r"\s{2,}")


def normalize_memo(memo: Optional[str]) -> Optional[str]:
    """Collapse runs of whitespace; blank memos become ``None``."""
    if not memo:
        return None
    normalized = _WHITESPACE_PATTERN.sub(" ", memo).strip()
    return normalized or None


def compose_memo(project: Optional[str], text: Optional[str]) -> Optional[str]:
    """Build a ``"[Project] description"`` memo from its parts."""
    project = normalize_memo(project)
    text = normalize_memo(text)
    if project and text:
        return f"[{project}] {text}"
    if project:
        return f"[{project}]"
    return text


def split_memo(memo: Optional[str]) -> tuple[Optional[str], str]:
    """Return ``(project, description)`` for a memo, if it carries a tag."""
    normalized = normalize_memo(memo)
    if not normalized:
        return None, ""
    match = _PROJECT_TAG_PATTERN.match(normalized)
    if not match:
        return None, normalized
    return match.group(1).strip() or None, match.group(2).strip()
