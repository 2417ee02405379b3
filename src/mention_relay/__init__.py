"""Top-level package for the clone mention relay."""

from __future__ import annotations

from typing import Any


def build_ingestor(on_mentioned: Any = None) -> Any:
    """Lazily wire an ingestor over the SQL stores to avoid heavy module import costs."""
    from .directory import SqlResponderDirectory
    from .ingest import MentionIngestor
    from .messages import SqlMessageStore
    from .store import MentionStore

    return MentionIngestor(SqlResponderDirectory(), MentionStore(), SqlMessageStore(), on_mentioned=on_mentioned)


__all__ = ["build_ingestor"]
