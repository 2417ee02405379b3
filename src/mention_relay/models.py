"""SQLModel data models representing channels, clones, chat messages, and mentions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, ForeignKey, Index, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from .utils import new_id


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info. Using naive UTC datetimes
    throughout keeps ordering comparisons consistent.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CloneVisibility(str, Enum):
    GLOBAL = "global"
    PRIVATE = "private"


class MentionScope(str, Enum):
    WORKSPACE = "WORKSPACE"
    GLOBAL = "GLOBAL"


class MentionStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    ERRORED = "errored"


class AuthorKind(str, Enum):
    USER = "user"
    CLONE = "clone"


class Channel(SQLModel, table=True):
    __tablename__ = "channels"
    __table_args__ = (UniqueConstraint("workspace_id", "name", name="uq_channel_workspace_name"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    workspace_id: str = Field(index=True, max_length=64)
    name: str = Field(max_length=128)
    created_at: datetime = Field(default_factory=_utcnow_naive)


class Clone(SQLModel, table=True):
    """An automated participant that can be mentioned and that replies.

    ``workspace_id`` is None for clones owned by no workspace; those are only
    reachable by name when their visibility is global.
    """

    __tablename__ = "clones"
    __table_args__ = (
        Index("idx_clones_name_workspace", "name", "workspace_id"),
        Index("idx_clones_name_visibility", "name", "visibility"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=128)
    workspace_id: Optional[str] = Field(default=None, index=True, max_length=64)
    visibility: str = Field(default=CloneVisibility.PRIVATE.value, max_length=16)
    base_prompt: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow_naive)


class ChatMessage(SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_channel_created", "channel_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    channel_id: str = Field(foreign_key="channels.id", index=True, max_length=32)
    author_id: str = Field(index=True, max_length=64)
    author_kind: str = Field(default=AuthorKind.USER.value, max_length=8)
    content: str
    parent_id: Optional[str] = Field(default=None, index=True, max_length=32)
    created_at: datetime = Field(default_factory=_utcnow_naive)
    updated_at: Optional[datetime] = Field(default=None)


class Mention(SQLModel, table=True):
    """Link between a message and a resolved clone, carrying the reply lifecycle.

    Lifecycle is tri-state: pending (``responded`` False, no error), responded
    (``responded`` True with a ``response_message_id``) or errored (``error``
    set). A pending row becomes terminal exactly once.
    """

    __tablename__ = "mentions"
    __table_args__ = (
        Index("idx_mentions_entity_pending", "entity_id", "responded", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)
    message_id: str = Field(
        sa_column=Column(String(32), ForeignKey("messages.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    entity_id: str = Field(index=True, max_length=32)
    scope: str = Field(max_length=16)
    responded: bool = Field(default=False)
    responded_at: Optional[datetime] = Field(default=None)
    response_message_id: Optional[str] = Field(default=None, max_length=32)
    error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow_naive)

    @property
    def status(self) -> MentionStatus:
        if self.error is not None:
            return MentionStatus.ERRORED
        if self.responded:
            return MentionStatus.RESPONDED
        return MentionStatus.PENDING
