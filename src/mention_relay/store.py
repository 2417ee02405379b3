"""Persistence and lifecycle transitions for mention records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import asc, delete, desc, ensure_schema, get_session, retry_on_db_lock, select, session_scope
from .errors import NotFoundError, PersistenceError
from .models import Mention, MentionScope


def _naive_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MentionStore:
    """CRUD over the ``mentions`` table.

    Write methods that take ``session=`` join the caller's transaction and
    leave committing to it; without one they commit on their own. Terminal
    transitions are not re-guarded here: callers only hand pending mentions
    to :meth:`mark_responded` and :meth:`mark_error`.
    """

    async def create(
        self,
        message_id: str,
        entity_id: str,
        scope: MentionScope | str,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Mention:
        mention = Mention(
            message_id=message_id,
            entity_id=entity_id,
            scope=MentionScope(scope).value,
        )
        try:
            async with session_scope(session) as active:
                active.add(mention)
                await active.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to create mention of {entity_id} in message {message_id}: {exc}",
                data={"message_id": message_id, "entity_id": entity_id},
            ) from exc
        return mention

    async def get(self, mention_id: str) -> Optional[Mention]:
        await ensure_schema()
        async with get_session() as session:
            return await session.get(Mention, mention_id)

    @retry_on_db_lock()
    async def _finish(self, mention_id: str, **values: Any) -> Mention:
        await ensure_schema()
        async with get_session() as session:
            mention = await session.get(Mention, mention_id)
            if mention is None:
                raise NotFoundError(f"Mention {mention_id} not found", data={"mention_id": mention_id})
            for key, value in values.items():
                setattr(mention, key, value)
            session.add(mention)
            await session.commit()
            await session.refresh(mention)
            return mention

    async def mark_responded(self, mention_id: str, response_message_id: str) -> Mention:
        return await self._finish(
            mention_id,
            responded=True,
            responded_at=_naive_utc(),
            response_message_id=response_message_id,
        )

    async def mark_error(self, mention_id: str, message: str) -> Mention:
        return await self._finish(mention_id, error=message or "unknown error")

    async def list_pending(self, entity_id: str) -> list[Mention]:
        """Pending mentions of one clone, oldest first."""
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                select(Mention)
                .where(
                    Mention.entity_id == entity_id,
                    Mention.responded == False,  # noqa: E712
                    Mention.error.is_(None),  # type: ignore[union-attr]
                )
                .order_by(asc(Mention.created_at))
            )
            return list(result.scalars().all())

    async def pending_entity_ids(self) -> list[str]:
        """Clones with at least one pending mention, by oldest outstanding mention."""
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                select(Mention.entity_id, Mention.created_at)
                .where(Mention.responded == False, Mention.error.is_(None))  # type: ignore[union-attr]  # noqa: E712
                .order_by(asc(Mention.created_at))
            )
            ordered: list[str] = []
            for entity_id, _created in result.all():
                if entity_id not in ordered:
                    ordered.append(entity_id)
            return ordered

    async def list_recent(self, *, entity_id: Optional[str] = None, limit: int = 50) -> list[Mention]:
        await ensure_schema()
        async with get_session() as session:
            stmt = select(Mention)
            if entity_id:
                stmt = stmt.where(Mention.entity_id == entity_id)
            result = await session.execute(stmt.order_by(desc(Mention.created_at)).limit(limit))
            return list(result.scalars().all())

    async def list_for_message(self, message_id: str, *, session: Optional[AsyncSession] = None) -> list[Mention]:
        async with session_scope(session) as active:
            result = await active.execute(
                select(Mention).where(Mention.message_id == message_id).order_by(asc(Mention.created_at))
            )
            return list(result.scalars().all())

    async def delete(self, mention_id: str, *, session: Optional[AsyncSession] = None) -> None:
        try:
            async with session_scope(session) as active:
                await active.execute(delete(Mention).where(Mention.id == mention_id))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete mention {mention_id}: {exc}") from exc

    async def delete_for_message(self, message_id: str, *, session: Optional[AsyncSession] = None) -> int:
        """Retire every mention of a message; returns the number of rows removed."""
        try:
            async with session_scope(session) as active:
                result = await active.execute(delete(Mention).where(Mention.message_id == message_id))
                return int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to delete mentions of message {message_id}: {exc}") from exc
