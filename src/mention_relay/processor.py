"""Drain pending mentions: call the responder and post each clone's reply.

Every mention is attempted once. Whatever goes wrong while handling it
(missing message or clone, responder failure, timeout, empty answer, a
failed write) ends in the mention's ``error`` field, and the loop moves on
to the next mention. Mentions of one clone are processed strictly in
creation order, one at a time, because each reply may build on the
conversation produced by the previous one.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import structlog

from .directory import ResponderDirectory
from .errors import MentionRelayError, NotFoundError, ResponderError, ResponderTimeoutError
from .messages import MessageStore
from .models import AuthorKind, ChatMessage, Mention, MentionStatus
from .responder import ContextTurn, ResponderClient, ResponderRequest
from .store import MentionStore

_logger = structlog.get_logger(__name__)

ORIGINAL_MESSAGE_NOT_FOUND = "original message not found"
ENTITY_NOT_FOUND = "entity not found"
NO_RESPONSE = "no response from service"


@dataclass(slots=True)
class ProcessingSummary:
    entity_id: str
    responded: list[str] = field(default_factory=list)
    errored: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.responded) + len(self.errored)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, MentionRelayError):
        return str(exc)
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class MentionProcessor:
    def __init__(
        self,
        store: MentionStore,
        messages: MessageStore,
        directory: ResponderDirectory,
        responder: ResponderClient,
        *,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._store = store
        self._messages = messages
        self._directory = directory
        self._responder = responder
        self._timeout = timeout_seconds
        # clone id -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def locked_entities(self) -> list[str]:
        return list(self._locks)

    @asynccontextmanager
    async def _entity_lock(self, entity_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(entity_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[entity_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[entity_id]
            if users <= 1:
                del self._locks[entity_id]
            else:
                self._locks[entity_id] = (lock, users - 1)

    async def build_context(self, message: ChatMessage) -> list[ContextTurn]:
        """Parent turn (when the message is a reply) followed by the message itself."""
        context: list[ContextTurn] = []
        if message.parent_id:
            parent = await self._messages.get_by_id(message.parent_id)
            if parent is not None:
                context.append(ContextTurn(role="user", content=parent.content))
        context.append(ContextTurn(role="user", content=message.content))
        return context

    async def _invoke(self, request: ResponderRequest) -> str:
        try:
            reply = await asyncio.wait_for(self._responder.invoke(request), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ResponderTimeoutError(f"responder timed out after {self._timeout:g}s") from exc
        if reply is None or not reply.response:
            raise ResponderError(NO_RESPONSE)
        return reply.response

    async def _respond(self, mention: Mention) -> Mention:
        message = await self._messages.get_by_id(mention.message_id)
        if message is None:
            raise NotFoundError(ORIGINAL_MESSAGE_NOT_FOUND, data={"message_id": mention.message_id})

        clone = await self._directory.get_by_id(mention.entity_id)
        if clone is None:
            raise NotFoundError(ENTITY_NOT_FOUND, data={"entity_id": mention.entity_id})

        context = await self.build_context(message)
        response = await self._invoke(
            ResponderRequest(
                context=context,
                entity_id=mention.entity_id,
                base_prompt=clone.base_prompt,
                query=message.content,
            )
        )
        reply = await self._messages.create(
            message.channel_id,
            mention.entity_id,
            response,
            message.id,
            author_kind=AuthorKind.CLONE,
        )
        return await self._store.mark_responded(mention.id, reply.id)

    async def _process(self, mention: Mention) -> MentionStatus:
        log = _logger.bind(mention_id=mention.id, message_id=mention.message_id, clone_id=mention.entity_id)
        log.info("mention.process.start")
        try:
            updated = await self._respond(mention)
        except Exception as exc:
            cause = _describe(exc)
            log.warning("mention.process.failed", error=cause)
            try:
                await self._store.mark_error(mention.id, cause)
            except Exception as record_exc:
                log.error("mention.process.record_error_failed", error=_describe(record_exc))
            return MentionStatus.ERRORED
        log.info("mention.process.responded", response_message_id=updated.response_message_id)
        return MentionStatus.RESPONDED

    async def process_one(self, mention: Mention) -> None:
        """Attempt one pending mention; failures are recorded on the mention, never raised."""
        await self._process(mention)

    async def process_all_pending(self, entity_id: str) -> ProcessingSummary:
        """Process every pending mention of one clone, oldest first, one at a time."""
        summary = ProcessingSummary(entity_id=entity_id)
        async with self._entity_lock(entity_id):
            pending = await self._store.list_pending(entity_id)
            _logger.info("mention.process.batch", clone_id=entity_id, pending=len(pending))
            for mention in pending:
                status = await self._process(mention)
                if status is MentionStatus.RESPONDED:
                    summary.responded.append(mention.id)
                else:
                    summary.errored.append(mention.id)
        return summary

    async def pending_entity_ids(self) -> list[str]:
        return await self._store.pending_entity_ids()


def build_processor(
    *,
    store: Optional[MentionStore] = None,
    messages: Optional[MessageStore] = None,
    directory: Optional[ResponderDirectory] = None,
    responder: Optional[ResponderClient] = None,
) -> MentionProcessor:
    """Processor wired to the SQL collaborators and the configured responder backend."""
    from .config import get_settings
    from .directory import SqlResponderDirectory
    from .messages import SqlMessageStore
    from .responder import build_responder_client

    settings = get_settings()
    return MentionProcessor(
        store or MentionStore(),
        messages or SqlMessageStore(),
        directory or SqlResponderDirectory(),
        responder or build_responder_client(settings),
        timeout_seconds=settings.responder.timeout_seconds,
    )
