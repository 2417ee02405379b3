"""Out-of-band triggering of mention processing.

Each clone gets its own ``asyncio.Queue`` and a single worker task draining
it, so mentions of one clone are handled one after another while different
clones proceed concurrently. A drain request for a clone that already has
one waiting is dropped, since the waiting drain will see the new mentions.
A worker whose queue runs empty exits and forgets its clone, so a
long-running dispatcher holds state only for clones with work queued.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Optional

import structlog

from .processor import MentionProcessor, ProcessingSummary

_logger = structlog.get_logger(__name__)


DEFAULT_SUMMARY_LIMIT = 256


class MentionDispatcher:
    def __init__(self, processor: MentionProcessor, *, summary_limit: int = DEFAULT_SUMMARY_LIMIT) -> None:
        self._processor = processor
        self._queues: dict[str, asyncio.Queue[str]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._waiting: set[str] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        # Oldest summaries are dropped once the limit is reached.
        self.summaries: deque[ProcessingSummary] = deque(maxlen=max(1, summary_limit))

    @property
    def active_entities(self) -> list[str]:
        return [entity_id for entity_id, task in self._workers.items() if not task.done()]

    def pop_summaries(self) -> list[ProcessingSummary]:
        """Return the summaries collected so far and forget them."""
        taken = list(self.summaries)
        self.summaries.clear()
        return taken

    def notify(self, entity_id: str) -> bool:
        """Request a drain for ``entity_id``; returns False when coalesced into a waiting one."""
        if self._closed:
            raise RuntimeError("dispatcher is shut down")
        if entity_id in self._waiting:
            return False
        queue = self._queues.get(entity_id)
        if queue is None:
            queue = self._queues[entity_id] = asyncio.Queue()
        self._waiting.add(entity_id)
        self._outstanding += 1
        self._idle.clear()
        queue.put_nowait(entity_id)
        worker = self._workers.get(entity_id)
        if worker is None or worker.done():
            self._workers[entity_id] = asyncio.create_task(
                self._run(entity_id, queue), name=f"mention-worker:{entity_id}"
            )
        return True

    async def _run(self, entity_id: str, queue: asyncio.Queue[str]) -> None:
        while True:
            await queue.get()
            # Later notifications must queue a fresh drain once this one has started.
            self._waiting.discard(entity_id)
            try:
                summary = await self._processor.process_all_pending(entity_id)
                self.summaries.append(summary)
                _logger.info(
                    "dispatch.drained",
                    clone_id=entity_id,
                    responded=len(summary.responded),
                    errored=len(summary.errored),
                )
            except Exception:
                _logger.exception("dispatch.drain_failed", clone_id=entity_id)
            finally:
                queue.task_done()
                self._outstanding -= 1
                if self._outstanding == 0:
                    self._idle.set()
            if queue.empty():
                # Retire; the next notify starts a fresh queue and worker.
                if self._queues.get(entity_id) is queue:
                    del self._queues[entity_id]
                    self._workers.pop(entity_id, None)
                return

    async def drain_pending(self) -> list[str]:
        """Notify every clone that has pending mentions; returns the clones notified."""
        entity_ids = await self._processor.pending_entity_ids()
        for entity_id in entity_ids:
            self.notify(entity_id)
        return entity_ids

    async def join(self) -> None:
        """Wait until every queued drain, including ones queued meanwhile, has finished."""
        while self._outstanding:
            await self._idle.wait()

    async def shutdown(self, *, drain: bool = False, timeout: Optional[float] = None) -> None:
        """Stop all workers. With ``drain=True`` queued work finishes first.

        A mention interrupted mid-flight keeps its pending state and is
        retried by the next drain.
        """
        self._closed = True
        if drain:
            try:
                await asyncio.wait_for(self.join(), timeout=timeout)
            except asyncio.TimeoutError:
                _logger.warning("dispatch.shutdown.drain_timeout", timeout=timeout)
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._waiting.clear()
        self._outstanding = 0
        self._idle.set()
