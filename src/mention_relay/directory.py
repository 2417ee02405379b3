"""Read-only lookup of clones (mentionable responders) plus an operator registration helper."""

from __future__ import annotations

from typing import Optional, Protocol

from .db import asc, ensure_schema, get_session, select, session_scope
from .models import Clone, CloneVisibility
from .utils import sanitize_clone_name


class ResponderDirectory(Protocol):
    async def get_by_id(self, entity_id: str) -> Optional[Clone]: ...

    async def find_by_name(self, name: str, workspace_id: str) -> Optional[Clone]: ...

    async def find_global_by_name(self, name: str) -> Optional[Clone]: ...


class SqlResponderDirectory:
    """Directory backed by the ``clones`` table."""

    async def get_by_id(self, entity_id: str) -> Optional[Clone]:
        await ensure_schema()
        async with get_session() as session:
            return await session.get(Clone, entity_id)

    async def find_by_name(self, name: str, workspace_id: str) -> Optional[Clone]:
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                select(Clone)
                .where(Clone.name == name, Clone.workspace_id == workspace_id)
                .order_by(asc(Clone.created_at))
            )
            return result.scalars().first()

    async def find_global_by_name(self, name: str) -> Optional[Clone]:
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                select(Clone)
                .where(
                    Clone.name == name,
                    Clone.visibility == CloneVisibility.GLOBAL.value,
                    Clone.workspace_id.is_(None),  # type: ignore[union-attr]
                )
                .order_by(asc(Clone.created_at))
            )
            return result.scalars().first()

    async def list_clones(self, workspace_id: Optional[str] = None) -> list[Clone]:
        """Clones reachable from ``workspace_id`` (all clones when None)."""
        await ensure_schema()
        async with get_session() as session:
            stmt = select(Clone).order_by(asc(Clone.name))
            if workspace_id is not None:
                stmt = stmt.where(
                    (Clone.workspace_id == workspace_id) | (Clone.visibility == CloneVisibility.GLOBAL.value)
                )
            result = await session.execute(stmt)
            return list(result.scalars().all())


async def register_clone(
    name: str,
    *,
    workspace_id: Optional[str] = None,
    visibility: CloneVisibility | str = CloneVisibility.PRIVATE,
    base_prompt: str = "",
) -> Clone:
    """Create a clone row. Names are reduced to word characters so they stay mentionable."""
    clean = sanitize_clone_name(name)
    if clean is None:
        raise ValueError(f"Clone name {name!r} has no word characters and could never be mentioned.")
    vis = CloneVisibility(visibility)
    if vis is CloneVisibility.PRIVATE and workspace_id is None:
        raise ValueError("Private clones must belong to a workspace.")
    clone = Clone(name=clean, workspace_id=workspace_id, visibility=vis.value, base_prompt=base_prompt)
    async with session_scope() as session:
        session.add(clone)
    return clone
