"""Resolve extracted mention candidates to clones under workspace/global visibility rules.

Precedence for one candidate:

1. An explicit ``[id:...]`` suffix decides alone: the clone with that id,
   if visible to the workspace. An unknown id is ``NOT_FOUND`` and a clone
   private to another workspace is ``NOT_VISIBLE``; neither falls back to
   the name, so a stale pin is never re-pointed at another clone.
2. Without a suffix, a clone with that name owned by the message's workspace.
3. A global clone with that name and no owning workspace.

Each candidate resolves independently; a failing lookup is reported as a
value and never aborts its siblings.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

from .directory import ResponderDirectory
from .models import Clone, CloneVisibility, MentionScope
from .parser import MentionCandidate

_logger = structlog.get_logger(__name__)


class FailureReason(str, Enum):
    NOT_FOUND = "not_found"
    NOT_VISIBLE = "not_visible"
    LOOKUP_FAILED = "lookup_failed"


@dataclass(slots=True, frozen=True)
class ResolvedMention:
    name: str
    entity_id: str
    scope: MentionScope
    raw_span: str
    start: int = 0


@dataclass(slots=True, frozen=True)
class ResolutionFailure:
    candidate: MentionCandidate
    reason: FailureReason
    detail: str = ""


@dataclass(slots=True, frozen=True)
class Resolution:
    candidate: MentionCandidate
    resolved: Optional[ResolvedMention] = None
    failure: Optional[ResolutionFailure] = None

    @property
    def ok(self) -> bool:
        return self.resolved is not None


@dataclass(slots=True)
class ResolutionBatch:
    resolved: list[ResolvedMention] = field(default_factory=list)
    failures: list[ResolutionFailure] = field(default_factory=list)

    def distinct_entities(self) -> list[ResolvedMention]:
        """First resolution per clone, in source order."""
        seen: set[str] = set()
        distinct: list[ResolvedMention] = []
        for mention in self.resolved:
            if mention.entity_id in seen:
                continue
            seen.add(mention.entity_id)
            distinct.append(mention)
        return distinct


def is_visible(clone: Clone, workspace_id: str) -> bool:
    if clone.visibility == CloneVisibility.GLOBAL.value:
        return True
    return clone.workspace_id is not None and clone.workspace_id == workspace_id


def scope_for(clone: Clone, workspace_id: str) -> MentionScope:
    return MentionScope.WORKSPACE if clone.workspace_id == workspace_id else MentionScope.GLOBAL


class MentionResolver:
    def __init__(self, directory: ResponderDirectory) -> None:
        self._directory = directory

    def _resolved(self, candidate: MentionCandidate, clone: Clone, scope: MentionScope) -> Resolution:
        return Resolution(
            candidate=candidate,
            resolved=ResolvedMention(
                name=candidate.name,
                entity_id=clone.id,
                scope=scope,
                raw_span=candidate.raw_span,
                start=candidate.start,
            ),
        )

    def _failed(self, candidate: MentionCandidate, reason: FailureReason, detail: str = "") -> Resolution:
        return Resolution(candidate=candidate, failure=ResolutionFailure(candidate, reason, detail))

    async def _lookup(self, candidate: MentionCandidate, workspace_id: str) -> Resolution:
        if candidate.explicit_id:
            clone = await self._directory.get_by_id(candidate.explicit_id)
            if clone is None:
                return self._failed(candidate, FailureReason.NOT_FOUND, f"clone {candidate.explicit_id} not found")
            if not is_visible(clone, workspace_id):
                return self._failed(
                    candidate,
                    FailureReason.NOT_VISIBLE,
                    f"clone {clone.id} is not accessible in workspace {workspace_id}",
                )
            return self._resolved(candidate, clone, scope_for(clone, workspace_id))

        clone = await self._directory.find_by_name(candidate.name, workspace_id)
        if clone is not None:
            return self._resolved(candidate, clone, MentionScope.WORKSPACE)

        clone = await self._directory.find_global_by_name(candidate.name)
        if clone is not None:
            return self._resolved(candidate, clone, MentionScope.GLOBAL)

        return self._failed(candidate, FailureReason.NOT_FOUND)

    async def resolve(self, candidate: MentionCandidate, workspace_id: str) -> Resolution:
        try:
            return await self._lookup(candidate, workspace_id)
        except Exception as exc:
            return self._failed(candidate, FailureReason.LOOKUP_FAILED, f"{type(exc).__name__}: {exc}")

    async def resolve_all(self, candidates: Iterable[MentionCandidate], workspace_id: str) -> ResolutionBatch:
        batch = ResolutionBatch()
        for candidate in candidates:
            resolution = await self.resolve(candidate, workspace_id)
            if resolution.resolved is not None:
                batch.resolved.append(resolution.resolved)
                continue
            assert resolution.failure is not None
            batch.failures.append(resolution.failure)
            if resolution.failure.reason is FailureReason.NOT_FOUND:
                _logger.debug("mention.resolve.not_found", name=candidate.name, workspace_id=workspace_id)
            else:
                _logger.warning(
                    f"mention.resolve.{resolution.failure.reason.value}",
                    name=candidate.name,
                    explicit_id=candidate.explicit_id,
                    workspace_id=workspace_id,
                    detail=resolution.failure.detail,
                )
        return batch
