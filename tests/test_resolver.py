from __future__ import annotations

from typing import Optional

import pytest

from mention_relay.directory import SqlResponderDirectory, register_clone
from mention_relay.models import Clone, CloneVisibility, MentionScope
from mention_relay.parser import extract
from mention_relay.resolver import FailureReason, MentionResolver, is_visible, scope_for


class FakeDirectory:
    def __init__(self, *clones: Clone, broken: Optional[set[str]] = None) -> None:
        self.clones = list(clones)
        self.broken = broken or set()

    async def get_by_id(self, entity_id: str) -> Optional[Clone]:
        return next((c for c in self.clones if c.id == entity_id), None)

    async def find_by_name(self, name: str, workspace_id: str) -> Optional[Clone]:
        if name in self.broken:
            raise RuntimeError("directory unavailable")
        return next((c for c in self.clones if c.name == name and c.workspace_id == workspace_id), None)

    async def find_global_by_name(self, name: str) -> Optional[Clone]:
        return next(
            (
                c
                for c in self.clones
                if c.name == name and c.workspace_id is None and c.visibility == CloneVisibility.GLOBAL.value
            ),
            None,
        )


def _clone(id: str, name: str, workspace_id: Optional[str], visibility: CloneVisibility) -> Clone:
    return Clone(id=id, name=name, workspace_id=workspace_id, visibility=visibility.value)


LOCAL = _clone("local", "Helper", "ws1", CloneVisibility.PRIVATE)
GLOBAL = _clone("glob", "Helper", None, CloneVisibility.GLOBAL)
FOREIGN = _clone("foreign", "Spy", "ws2", CloneVisibility.PRIVATE)
SHARED = _clone("shared", "Guide", "ws2", CloneVisibility.GLOBAL)


def _only(text: str):
    (candidate,) = extract(text)
    return candidate


def test_visibility_and_scope_rules():
    assert is_visible(LOCAL, "ws1")
    assert not is_visible(LOCAL, "ws2")
    assert is_visible(GLOBAL, "anything")
    assert is_visible(SHARED, "ws1")
    assert scope_for(LOCAL, "ws1") is MentionScope.WORKSPACE
    assert scope_for(SHARED, "ws1") is MentionScope.GLOBAL
    assert scope_for(SHARED, "ws2") is MentionScope.WORKSPACE


@pytest.mark.asyncio
async def test_workspace_clone_shadows_global_clone_of_same_name():
    resolver = MentionResolver(FakeDirectory(GLOBAL, LOCAL))
    resolution = await resolver.resolve(_only("@Helper"), "ws1")
    assert resolution.ok
    assert resolution.resolved.entity_id == "local"
    assert resolution.resolved.scope is MentionScope.WORKSPACE


@pytest.mark.asyncio
async def test_global_clone_used_when_workspace_has_none():
    resolver = MentionResolver(FakeDirectory(GLOBAL, LOCAL))
    resolution = await resolver.resolve(_only("@Helper"), "ws9")
    assert resolution.resolved.entity_id == "glob"
    assert resolution.resolved.scope is MentionScope.GLOBAL


@pytest.mark.asyncio
async def test_explicit_id_takes_precedence_over_name():
    resolver = MentionResolver(FakeDirectory(GLOBAL, LOCAL))
    resolution = await resolver.resolve(_only("@Helper[id:glob]"), "ws1")
    assert resolution.resolved.entity_id == "glob"
    assert resolution.resolved.scope is MentionScope.GLOBAL


@pytest.mark.asyncio
async def test_explicit_id_of_global_clone_owned_elsewhere_is_global_scope():
    resolver = MentionResolver(FakeDirectory(SHARED))
    resolution = await resolver.resolve(_only("@Guide[id:shared]"), "ws1")
    assert resolution.resolved.entity_id == "shared"
    assert resolution.resolved.scope is MentionScope.GLOBAL


@pytest.mark.asyncio
async def test_explicit_id_of_private_foreign_clone_is_not_visible():
    # A same-named local clone must not be silently substituted.
    local_spy = _clone("local-spy", "Spy", "ws1", CloneVisibility.PRIVATE)
    resolver = MentionResolver(FakeDirectory(FOREIGN, local_spy))
    resolution = await resolver.resolve(_only("@Spy[id:foreign]"), "ws1")
    assert not resolution.ok
    assert resolution.failure.reason is FailureReason.NOT_VISIBLE


@pytest.mark.asyncio
async def test_unknown_explicit_id_is_not_found_even_when_name_matches():
    resolver = MentionResolver(FakeDirectory(LOCAL, GLOBAL))
    resolution = await resolver.resolve(_only("@Helper[id:deleted-clone]"), "ws1")
    assert not resolution.ok
    assert resolution.failure.reason is FailureReason.NOT_FOUND

    batch = await resolver.resolve_all(extract("@Helper[id:deleted-clone] and @Helper"), "ws1")
    assert [m.entity_id for m in batch.resolved] == ["local"]
    assert [f.candidate.explicit_id for f in batch.failures] == ["deleted-clone"]


@pytest.mark.asyncio
async def test_unknown_name_is_not_found():
    resolver = MentionResolver(FakeDirectory(LOCAL))
    resolution = await resolver.resolve(_only("@Nobody"), "ws1")
    assert resolution.failure.reason is FailureReason.NOT_FOUND


@pytest.mark.asyncio
async def test_private_foreign_clone_unreachable_by_name():
    resolver = MentionResolver(FakeDirectory(FOREIGN))
    resolution = await resolver.resolve(_only("@Spy"), "ws1")
    assert resolution.failure.reason is FailureReason.NOT_FOUND


@pytest.mark.asyncio
async def test_lookup_failure_does_not_abort_siblings():
    resolver = MentionResolver(FakeDirectory(LOCAL, broken={"Boom"}))
    batch = await resolver.resolve_all(extract("@Boom then @Helper"), "ws1")
    assert [m.entity_id for m in batch.resolved] == ["local"]
    assert len(batch.failures) == 1
    failure = batch.failures[0]
    assert failure.reason is FailureReason.LOOKUP_FAILED
    assert "directory unavailable" in failure.detail


@pytest.mark.asyncio
async def test_distinct_entities_keeps_first_occurrence():
    resolver = MentionResolver(FakeDirectory(LOCAL))
    batch = await resolver.resolve_all(extract("@Helper @Helper[id:local] @Helper"), "ws1")
    assert len(batch.resolved) == 3
    distinct = batch.distinct_entities()
    assert [(m.entity_id, m.raw_span) for m in distinct] == [("local", "@Helper")]


@pytest.mark.asyncio
async def test_sql_directory_follows_same_rules(isolated_env):
    local = await register_clone("Helper", workspace_id="ws1")
    glob = await register_clone("Helper", visibility=CloneVisibility.GLOBAL)
    shared = await register_clone("Guide", workspace_id="ws2", visibility="global")
    resolver = MentionResolver(SqlResponderDirectory())

    assert (await resolver.resolve(_only("@Helper"), "ws1")).resolved.entity_id == local.id
    assert (await resolver.resolve(_only("@Helper"), "ws2")).resolved.entity_id == glob.id
    # Global clones owned by a workspace are reachable only through an explicit id.
    assert (await resolver.resolve(_only("@Guide"), "ws1")).failure.reason is FailureReason.NOT_FOUND
    pinned = await resolver.resolve(_only(f"@Guide[id:{shared.id}]"), "ws1")
    assert pinned.resolved.entity_id == shared.id


@pytest.mark.asyncio
async def test_register_clone_validates_input(isolated_env):
    with pytest.raises(ValueError):
        await register_clone("!!!", workspace_id="ws1")
    with pytest.raises(ValueError):
        await register_clone("Orphan")
    clone = await register_clone(" Data-Bot ", workspace_id="ws1")
    assert clone.name == "DataBot"
