"""Chat message and channel persistence used by ingestion and clone replies."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import delete, ensure_schema, get_session, session_scope
from .errors import NotFoundError, PersistenceError
from .models import AuthorKind, Channel, ChatMessage, Mention


class MessageStore(Protocol):
    async def get_by_id(self, message_id: str) -> Optional[ChatMessage]: ...

    async def create(
        self,
        channel_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
        *,
        author_kind: AuthorKind = AuthorKind.USER,
    ) -> ChatMessage: ...


class SqlMessageStore:
    async def get_by_id(self, message_id: str) -> Optional[ChatMessage]:
        await ensure_schema()
        async with get_session() as session:
            return await session.get(ChatMessage, message_id)

    async def create(
        self,
        channel_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
        *,
        author_kind: AuthorKind = AuthorKind.USER,
        session: Optional[AsyncSession] = None,
    ) -> ChatMessage:
        message = ChatMessage(
            channel_id=channel_id,
            author_id=author_id,
            author_kind=AuthorKind(author_kind).value,
            content=content,
            parent_id=parent_id,
        )
        try:
            async with session_scope(session) as active:
                active.add(message)
                await active.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to create message in channel {channel_id}: {exc}",
                data={"channel_id": channel_id, "author_id": author_id},
            ) from exc
        return message

    async def update_content(
        self,
        message_id: str,
        content: str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> ChatMessage:
        try:
            async with session_scope(session) as active:
                message = await active.get(ChatMessage, message_id)
                if message is None:
                    raise NotFoundError(f"Message {message_id} not found", data={"message_id": message_id})
                message.content = content
                message.updated_at = datetime.now(timezone.utc).replace(tzinfo=None)
                active.add(message)
                await active.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update message {message_id}: {exc}") from exc
        return message

    async def delete(self, message_id: str) -> None:
        """Delete a message together with its mention records."""
        try:
            async with session_scope() as active:
                message = await active.get(ChatMessage, message_id)
                if message is None:
                    raise NotFoundError(f"Message {message_id} not found", data={"message_id": message_id})
                await active.execute(delete(Mention).where(Mention.message_id == message_id))
                await active.delete(message)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete message {message_id}: {exc}") from exc

    async def create_channel(self, workspace_id: str, name: str) -> Channel:
        channel = Channel(workspace_id=workspace_id, name=name)
        try:
            async with session_scope() as active:
                active.add(channel)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to create channel {name!r}: {exc}") from exc
        return channel

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        await ensure_schema()
        async with get_session() as session:
            return await session.get(Channel, channel_id)
