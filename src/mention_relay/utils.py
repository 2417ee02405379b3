"""Utility helpers for the mention relay service."""

from __future__ import annotations

import re
import uuid
from typing import Optional

_CLONE_NAME_RE = re.compile(r"\W+")
_EXCERPT_WS_RE = re.compile(r"\s+")


def new_id() -> str:
    """Return a fresh opaque row identifier."""
    return uuid.uuid4().hex


def sanitize_clone_name(value: str) -> Optional[str]:
    """Normalize a clone name to word characters so ``@name`` can reach it; None if nothing remains."""
    cleaned = _CLONE_NAME_RE.sub("", value.strip())
    if not cleaned:
        return None
    return cleaned[:128]


def excerpt(text: str, *, limit: int = 80) -> str:
    """Single-line, truncated preview of message content for logs and tables."""
    flat = _EXCERPT_WS_RE.sub(" ", text or "").strip()
    if len(flat) <= limit:
        return flat
    return flat[: max(0, limit - 3)] + "..."
