"""Mention syntax: extraction of ``@name`` references and canonical rewriting.

A mention is ``@`` followed by one or more word characters. Once resolved,
it is stored pinned to its clone as ``@name[id:<clone id>]`` so that parsing
the stored content again yields the same clone without a name lookup.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Optional, Protocol

MENTION_RE = re.compile(r"@(\w+)(?:\[id:([^\]]+)\])?")


@dataclass(slots=True, frozen=True)
class MentionCandidate:
    raw_span: str
    name: str
    explicit_id: Optional[str]
    start: int
    end: int


class _Span(Protocol):
    @property
    def raw_span(self) -> str: ...

    @property
    def name(self) -> str: ...

    @property
    def entity_id(self) -> str: ...

    @property
    def start(self) -> int: ...


def extract(text: str) -> Iterator[MentionCandidate]:
    """Lazily yield mention candidates in left-to-right order."""
    if not text:
        return
    for match in MENTION_RE.finditer(text):
        yield MentionCandidate(
            raw_span=match.group(0),
            name=match.group(1),
            explicit_id=match.group(2),
            start=match.start(),
            end=match.end(),
        )


def canonical_form(name: str, entity_id: str) -> str:
    return f"@{name}[id:{entity_id}]"


def _span_pattern(raw_span: str) -> re.Pattern[str]:
    if raw_span.endswith("]"):
        return re.compile(re.escape(raw_span))
    # A bare span must not continue into a longer name or an id suffix.
    return re.compile(re.escape(raw_span) + r"(?!\w|\[id:[^\]]+\])")


def _locate(text: str, raw_span: str, start_hint: int, cursor: int) -> int:
    """Position of ``raw_span`` at or after ``cursor``, preferring the recorded offset."""
    pattern = _span_pattern(raw_span)
    if start_hint >= cursor and pattern.match(text, start_hint):
        return start_hint
    match = pattern.search(text, cursor)
    return match.start() if match else -1


def canonicalize(text: str, resolved: Iterable[_Span]) -> str:
    """Rewrite every resolved mention to its canonical ``@name[id:...]`` form.

    ``resolved`` must be in source order, as produced by :func:`extract`.
    Text between mentions is copied through untouched, and a span already in
    canonical form for the same clone is reproduced exactly, so applying the
    function twice with the same resolutions changes nothing.
    """
    if not text:
        return text
    parts: list[str] = []
    cursor = 0
    for mention in resolved:
        position = _locate(text, mention.raw_span, mention.start, cursor)
        if position < 0:
            continue
        parts.append(text[cursor:position])
        parts.append(canonical_form(mention.name, mention.entity_id))
        cursor = position + len(mention.raw_span)
    parts.append(text[cursor:])
    return "".join(parts)
