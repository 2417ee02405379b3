from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import pytest

from mention_relay.directory import SqlResponderDirectory, register_clone
from mention_relay.errors import ResponderError
from mention_relay.ingest import MentionIngestor
from mention_relay.messages import SqlMessageStore
from mention_relay.models import AuthorKind, Mention, MentionScope, MentionStatus
from mention_relay.processor import MentionProcessor
from mention_relay.responder import ResponderReply, ResponderRequest
from mention_relay.store import MentionStore


class ScriptedResponder:
    """Answers every request through ``behaviour`` and records what it was asked."""

    def __init__(self, behaviour: Optional[Callable[[ResponderRequest], Any]] = None) -> None:
        self.behaviour = behaviour or (lambda request: "ok")
        self.requests: list[ResponderRequest] = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, request: ResponderRequest) -> ResponderReply:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            outcome = self.behaviour(request)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            if isinstance(outcome, Exception):
                raise outcome
            return ResponderReply(response=outcome)
        finally:
            self.active -= 1


async def _setup(responder: ScriptedResponder, *, timeout_seconds: float = 5.0):
    messages = SqlMessageStore()
    store = MentionStore()
    directory = SqlResponderDirectory()
    channel = await messages.create_channel("ws1", "general")
    helper = await register_clone("Helper", workspace_id="ws1", base_prompt="You add numbers.")
    ingestor = MentionIngestor(directory, store, messages)
    processor = MentionProcessor(store, messages, directory, responder, timeout_seconds=timeout_seconds)
    return channel, helper, ingestor, processor, store, messages


@pytest.mark.asyncio
async def test_reply_posted_in_thread_and_mention_responded(isolated_env):
    responder = ScriptedResponder(lambda request: "4")
    channel, helper, ingestor, processor, store, messages = await _setup(responder)

    posted = await ingestor.post_message(channel.id, "user-1", "Hello @Helper, what's 2+2?")
    assert posted.message.content == f"Hello @Helper[id:{helper.id}], what's 2+2?"
    (mention,) = posted.mentions

    summary = await processor.process_all_pending(helper.id)
    assert summary.responded == [mention.id]
    assert summary.errored == []

    updated = await store.get(mention.id)
    assert updated.status is MentionStatus.RESPONDED
    reply = await messages.get_by_id(updated.response_message_id)
    assert reply.content == "4"
    assert reply.channel_id == channel.id
    assert reply.parent_id == posted.message.id
    assert reply.author_id == helper.id
    assert reply.author_kind == AuthorKind.CLONE.value

    (request,) = responder.requests
    assert request.entity_id == helper.id
    assert request.base_prompt == "You add numbers."
    assert request.query == posted.message.content
    assert [(t.role, t.content) for t in request.context] == [("user", posted.message.content)]


@pytest.mark.asyncio
async def test_context_includes_parent_message_first(isolated_env):
    responder = ScriptedResponder()
    channel, helper, ingestor, processor, _store, _messages = await _setup(responder)

    root = await ingestor.post_message(channel.id, "user-1", "We need a budget.")
    child = await ingestor.post_message(channel.id, "user-2", "@Helper thoughts?", parent_id=root.message.id)
    await processor.process_all_pending(helper.id)

    (request,) = responder.requests
    assert [t.content for t in request.context] == ["We need a budget.", child.message.content]
    assert all(t.role == "user" for t in request.context)


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_batch(isolated_env):
    def behaviour(request: ResponderRequest):
        if "second" in request.query:
            return ResponderError("AI Service Error: 500 - overloaded")
        return "done"

    responder = ScriptedResponder(behaviour)
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    ids = []
    for label in ("first", "second", "third"):
        posted = await ingestor.post_message(channel.id, "user-1", f"@Helper {label}")
        ids.append(posted.mentions[0].id)
        await asyncio.sleep(0.002)

    summary = await processor.process_all_pending(helper.id)
    assert summary.responded == [ids[0], ids[2]]
    assert summary.errored == [ids[1]]
    assert [r.query.split()[-1] for r in responder.requests] == ["first", "second", "third"]

    failed = await store.get(ids[1])
    assert failed.status is MentionStatus.ERRORED
    assert failed.error == "AI Service Error: 500 - overloaded"
    for mention_id in (ids[0], ids[2]):
        assert (await store.get(mention_id)).status is MentionStatus.RESPONDED

    # Terminal mentions are never picked up again.
    again = await processor.process_all_pending(helper.id)
    assert again.total == 0
    assert len(responder.requests) == 3


@pytest.mark.asyncio
async def test_timeout_is_recorded_as_error(isolated_env):
    async def slow(request: ResponderRequest):
        await asyncio.sleep(5)
        return "too late"

    responder = ScriptedResponder(slow)
    channel, helper, ingestor, processor, store, _messages = await _setup(responder, timeout_seconds=0.05)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper hurry")

    await processor.process_all_pending(helper.id)
    mention = await store.get(posted.mentions[0].id)
    assert mention.status is MentionStatus.ERRORED
    assert mention.error == "responder timed out after 0.05s"


@pytest.mark.asyncio
async def test_empty_response_is_an_error(isolated_env):
    responder = ScriptedResponder(lambda request: "")
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper say nothing")

    await processor.process_all_pending(helper.id)
    mention = await store.get(posted.mentions[0].id)
    assert mention.error == "no response from service"
    assert mention.response_message_id is None


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded_with_type(isolated_env):
    responder = ScriptedResponder(lambda request: KeyError("response"))
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper hi")

    await processor.process_one(posted.mentions[0])
    mention = await store.get(posted.mentions[0].id)
    assert mention.error == "KeyError: 'response'"


class _ForgetfulMessages(SqlMessageStore):
    async def get_by_id(self, message_id: str):
        return None


@pytest.mark.asyncio
async def test_missing_origin_message_is_recorded(isolated_env):
    responder = ScriptedResponder()
    channel, helper, ingestor, _processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper hi")
    processor = MentionProcessor(store, _ForgetfulMessages(), SqlResponderDirectory(), responder)

    await processor.process_one(posted.mentions[0])
    mention = await store.get(posted.mentions[0].id)
    assert mention.error == "original message not found"
    assert responder.requests == []


@pytest.mark.asyncio
async def test_missing_clone_is_recorded(isolated_env):
    responder = ScriptedResponder()
    channel, _helper, ingestor, processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "nobody here")
    orphan = await store.create(posted.message.id, "deleted-clone", MentionScope.WORKSPACE)

    summary = await processor.process_all_pending("deleted-clone")
    assert summary.errored == [orphan.id]
    assert (await store.get(orphan.id)).error == "entity not found"


@pytest.mark.asyncio
async def test_failed_error_write_does_not_escape(isolated_env, monkeypatch):
    responder = ScriptedResponder(lambda request: RuntimeError("boom"))
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper hi")

    async def broken_mark_error(mention_id: str, message: str) -> Mention:
        raise RuntimeError("database gone")

    monkeypatch.setattr(store, "mark_error", broken_mark_error)
    await processor.process_one(posted.mentions[0])
    assert (await store.get(posted.mentions[0].id)).status is MentionStatus.PENDING


@pytest.mark.asyncio
async def test_same_clone_processed_one_mention_at_a_time(isolated_env):
    responder = ScriptedResponder()
    channel, helper, ingestor, processor, _store, _messages = await _setup(responder)
    for i in range(4):
        await ingestor.post_message(channel.id, "user-1", f"@Helper task {i}")

    first, second = await asyncio.gather(
        processor.process_all_pending(helper.id),
        processor.process_all_pending(helper.id),
    )
    assert responder.max_active == 1
    assert first.total + second.total == 4
    assert len(responder.requests) == 4


@pytest.mark.asyncio
async def test_cancellation_leaves_mention_pending(isolated_env):
    started = asyncio.Event()

    async def hang(request: ResponderRequest):
        started.set()
        await asyncio.sleep(60)

    responder = ScriptedResponder(hang)
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    posted = await ingestor.post_message(channel.id, "user-1", "@Helper wait")

    task = asyncio.create_task(processor.process_all_pending(helper.id))
    await asyncio.wait_for(started.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert (await store.get(posted.mentions[0].id)).status is MentionStatus.PENDING


@pytest.mark.asyncio
async def test_middle_mention_with_missing_clone_does_not_block_neighbours(isolated_env):
    responder = ScriptedResponder(lambda request: "reply")
    channel, helper, ingestor, processor, store, _messages = await _setup(responder)
    first = (await ingestor.post_message(channel.id, "user-1", "@Helper one")).mentions[0]
    carrier = await ingestor.post_message(channel.id, "user-1", "two")
    orphan = await store.create(carrier.message.id, "vanished", MentionScope.WORKSPACE)
    third = (await ingestor.post_message(channel.id, "user-1", "@Helper three")).mentions[0]

    for mention in (first, orphan, third):
        await processor.process_one(mention)

    statuses = [(await store.get(m.id)).status for m in (first, orphan, third)]
    assert statuses == [MentionStatus.RESPONDED, MentionStatus.ERRORED, MentionStatus.RESPONDED]
    assert (await store.get(orphan.id)).error == "entity not found"


class _FlakyDirectory(SqlResponderDirectory):
    """Loses the clone on one chosen lookup."""

    def __init__(self, failing_call: int) -> None:
        self.calls = 0
        self.failing_call = failing_call

    async def get_by_id(self, entity_id: str):
        self.calls += 1
        if self.calls == self.failing_call:
            return None
        return await super().get_by_id(entity_id)


@pytest.mark.asyncio
async def test_batch_finishes_neighbours_when_middle_clone_lookup_fails(isolated_env):
    responder = ScriptedResponder(lambda request: "reply")
    channel, helper, ingestor, _processor, store, messages = await _setup(responder)
    ids = []
    for label in ("one", "two", "three"):
        posted = await ingestor.post_message(channel.id, "user-1", f"@Helper {label}")
        ids.append(posted.mentions[0].id)
        await asyncio.sleep(0.002)
    processor = MentionProcessor(store, messages, _FlakyDirectory(failing_call=2), responder)

    summary = await processor.process_all_pending(helper.id)

    assert summary.responded == [ids[0], ids[2]]
    assert summary.errored == [ids[1]]
    assert (await store.get(ids[1])).error == "entity not found"
    assert [r.query.split()[-1] for r in responder.requests] == ["one", "three"]


@pytest.mark.asyncio
async def test_clone_locks_are_released_after_batches(isolated_env):
    responder = ScriptedResponder()
    channel, helper, ingestor, processor, _store, _messages = await _setup(responder)
    await ingestor.post_message(channel.id, "user-1", "@Helper hi")

    await asyncio.gather(
        processor.process_all_pending(helper.id),
        processor.process_all_pending(helper.id),
        processor.process_all_pending("someone-else"),
    )
    for i in range(20):
        await processor.process_all_pending(f"idle-{i}")

    assert processor.locked_entities == []
    assert len(responder.requests) == 1
