"""
Ordered, retrying work queue.

Incoming remote changes and outgoing side effects (pushes, inventory
decrements, notification fan-out) are handled through ProcessingQueue
instances. Each queue runs one item at a time and awaits the handler before
taking the next one, so ordering holds within a queue but not across queues.

Design decisions:
- Items carry an attempt counter
- A failed item goes back to the tail after retry_delay * attempt; the wait is
  a loop timer, so the worker keeps processing other items meanwhile
- After max_retries retries the item is dropped with exactly one
  "Permanent failure" ERROR log entry and kept in dead_letters
- Items of an unknown kind are permanent failures straight away
- An optional on_dead_letter callback hears about every permanent failure
- Handlers must be idempotent: an item may run more than once
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

logger = logging.getLogger("processing_queue")


@dataclass
class QueueItem:
    """
    A unit of work.

    Attributes:
        kind: Selects the handler registered for it
        payload: Handler input
        attempt: Number of times a handler has been run for this item
    """
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    item_id: str = field(default_factory=lambda: str(uuid4())[:8])
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None


QueueHandler = Callable[[QueueItem], Awaitable[None]]


class ProcessingQueue:
    """
    Single-consumer FIFO with bounded retries.

    Example usage:
        queue = ProcessingQueue("side_effects", max_retries=3, retry_delay=2.0)
        queue.register("push", push_handler)
        queue.enqueue(QueueItem("push", {"collection": "orders", ...}))
        await queue.join()
    """

    def __init__(
        self,
        name: str,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        on_dead_letter: Optional[Callable[[QueueItem], None]] = None,
    ):
        self.name = name
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.on_dead_letter = on_dead_letter

        self._handlers: dict[str, QueueHandler] = {}
        self._items: deque[QueueItem] = deque()
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: Optional[asyncio.Task] = None
        self._busy = False
        self._closed = False

        self.dead_letters: list[QueueItem] = []
        self._processed = 0
        self._failed_attempts = 0

    def register(self, kind: str, handler: QueueHandler) -> None:
        self._handlers[kind] = handler

    def enqueue(self, item: QueueItem) -> QueueItem:
        """Append an item at the tail and make sure the worker is running."""
        if self._closed:
            raise RuntimeError(f"Queue '{self.name}' is closed")
        self._items.append(item)
        self._idle.clear()
        self._wakeup.set()
        self._ensure_worker()
        return item

    async def join(self) -> None:
        """Wait until no item is queued, running or waiting for a retry."""
        await self._idle.wait()

    def close(self) -> None:
        """Cancel the worker and every pending retry. Queued items are discarded."""
        self._closed = True
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        if self._items:
            logger.warning(f"Queue '{self.name}' closed with {len(self._items)} unprocessed item(s)")
        self._items.clear()
        self._idle.set()

    @property
    def is_idle(self) -> bool:
        return self._idle.is_set()

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "queued": len(self._items),
            "retrying": len(self._retry_timers),
            "processed": self._processed,
            "failed_attempts": self._failed_attempts,
            "dead_letters": len(self.dead_letters),
        }

    # =========================================================================
    # Worker
    # =========================================================================

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name=f"queue:{self.name}")

    async def _run(self) -> None:
        while True:
            while not self._items:
                self._update_idle()
                self._wakeup.clear()
                await self._wakeup.wait()
            item = self._items.popleft()
            self._busy = True
            try:
                await self._process(item)
            finally:
                self._busy = False

    def _update_idle(self) -> None:
        if not self._items and not self._retry_timers and not self._busy:
            self._idle.set()
        else:
            self._idle.clear()

    async def _process(self, item: QueueItem) -> None:
        handler = self._handlers.get(item.kind)
        if handler is None:
            logger.error(
                f"Permanent failure in queue '{self.name}': no handler for kind "
                f"'{item.kind}' (item {item.item_id})"
            )
            self._dead_letter(item)
            return

        item.attempt += 1
        try:
            await handler(item)
        except Exception as e:
            self._failed_attempts += 1
            item.last_error = str(e)
            retries_used = item.attempt - 1
            if retries_used >= self.max_retries:
                logger.error(
                    f"Permanent failure in queue '{self.name}': {item.kind} item {item.item_id} "
                    f"dropped after {item.attempt} attempts: {e}"
                )
                self._dead_letter(item)
                return

            delay = self.retry_delay * item.attempt
            logger.warning(
                f"Queue '{self.name}': {item.kind} item {item.item_id} failed on attempt "
                f"{item.attempt}, retrying in {delay:.2f}s: {e}"
            )
            self._retry_timers[item.item_id] = asyncio.get_running_loop().call_later(
                delay, self._requeue, item
            )
            return

        self._processed += 1

    def _dead_letter(self, item: QueueItem) -> None:
        self.dead_letters.append(item)
        if self.on_dead_letter is not None:
            self.on_dead_letter(item)

    def _requeue(self, item: QueueItem) -> None:
        self._retry_timers.pop(item.item_id, None)
        if self._closed:
            return
        self._items.append(item)
        self._wakeup.set()
