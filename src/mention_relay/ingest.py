"""Turn user-authored text into stored messages with pinned clone mentions.

Posting and editing share one pipeline: extract candidates, resolve them
against the channel's workspace, rewrite resolved spans to their canonical
``@name[id:...]`` form, then persist the message and one mention record per
distinct clone inside a single transaction. Clones are notified only after
the transaction commits.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .db import session_scope
from .directory import ResponderDirectory
from .errors import NotFoundError, PersistenceError
from .messages import SqlMessageStore
from .models import ChatMessage, Mention
from .parser import canonicalize, extract
from .resolver import MentionResolver, ResolutionFailure, ResolvedMention
from .store import MentionStore
from .utils import excerpt

_logger = structlog.get_logger(__name__)

MentionCallback = Callable[[str], object]


@dataclass(slots=True)
class PreparedContent:
    content: str
    mentions: list[ResolvedMention] = field(default_factory=list)
    failures: list[ResolutionFailure] = field(default_factory=list)

    @property
    def entity_ids(self) -> list[str]:
        return [mention.entity_id for mention in self.mentions]


@dataclass(slots=True)
class IngestResult:
    message: ChatMessage
    mentions: list[Mention] = field(default_factory=list)
    failures: list[ResolutionFailure] = field(default_factory=list)


class MentionIngestor:
    def __init__(
        self,
        directory: ResponderDirectory,
        store: MentionStore,
        messages: SqlMessageStore,
        on_mentioned: Optional[MentionCallback] = None,
    ) -> None:
        self._resolver = MentionResolver(directory)
        self._store = store
        self._messages = messages
        self._on_mentioned = on_mentioned

    async def prepare(self, text: str, workspace_id: str) -> PreparedContent:
        """Resolve and canonicalize ``text``; ``mentions`` holds one entry per distinct clone."""
        batch = await self._resolver.resolve_all(extract(text), workspace_id)
        return PreparedContent(
            content=canonicalize(text, batch.resolved),
            mentions=batch.distinct_entities(),
            failures=batch.failures,
        )

    async def _workspace_of(self, channel_id: str) -> str:
        channel = await self._messages.get_channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found", data={"channel_id": channel_id})
        return channel.workspace_id

    def _notify(self, mentions: list[Mention]) -> None:
        if self._on_mentioned is None:
            return
        for mention in mentions:
            try:
                self._on_mentioned(mention.entity_id)
            except Exception as exc:
                # The rows are committed; the scheduled sweep still picks them up.
                _logger.warning("mention.notify.failed", clone_id=mention.entity_id, error=str(exc))

    async def post_message(
        self,
        channel_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
    ) -> IngestResult:
        workspace_id = await self._workspace_of(channel_id)
        prepared = await self.prepare(content, workspace_id)
        try:
            async with session_scope() as session:
                message = await self._messages.create(
                    channel_id, author_id, prepared.content, parent_id, session=session
                )
                mentions = [
                    await self._store.create(message.id, resolved.entity_id, resolved.scope, session=session)
                    for resolved in prepared.mentions
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store message in channel {channel_id}: {exc}") from exc
        _logger.info(
            "message.posted",
            message_id=message.id,
            channel_id=channel_id,
            mentions=len(mentions),
            unresolved=len(prepared.failures),
            preview=excerpt(prepared.content),
        )
        self._notify(mentions)
        return IngestResult(message=message, mentions=mentions, failures=prepared.failures)

    async def edit_message(self, message_id: str, content: str) -> IngestResult:
        """Replace a message's content and rebuild its mention set from the new text."""
        existing = await self._messages.get_by_id(message_id)
        if existing is None:
            raise NotFoundError(f"Message {message_id} not found", data={"message_id": message_id})
        workspace_id = await self._workspace_of(existing.channel_id)
        prepared = await self.prepare(content, workspace_id)
        try:
            async with session_scope() as session:
                retired = await self._store.delete_for_message(message_id, session=session)
                message = await self._messages.update_content(message_id, prepared.content, session=session)
                mentions = [
                    await self._store.create(message_id, resolved.entity_id, resolved.scope, session=session)
                    for resolved in prepared.mentions
                ]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update message {message_id}: {exc}") from exc
        _logger.info("message.edited", message_id=message_id, retired=retired, mentions=len(mentions))
        self._notify(mentions)
        return IngestResult(message=message, mentions=mentions, failures=prepared.failures)

    async def delete_message(self, message_id: str) -> None:
        await self._messages.delete(message_id)
        _logger.info("message.deleted", message_id=message_id)
