"""
Change broadcast between clients on the same device.

A client publishes a change by writing an envelope to a dedicated key in the
shared storage; every other client watching the storage is told the key
changed and reads the envelope.

Design decisions:
- Delivery is deferred to the next loop iteration and reads the key's
  *current* value, so a fast second write overwrites a pending one. Delivery
  is at-least-once for the latest envelope only; consumers must re-read the
  full snapshot instead of trusting payload deltas for stock and totals.
- A client never re-processes its own envelopes
- An envelope already seen (same origin, sequence not newer) is dropped
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from shared.exceptions import CapacityError
from shared.models import utcnow
from shared.storage import SharedStorage

logger = logging.getLogger("broadcast")

WILDCARD = "*"


@dataclass
class BroadcastMessage:
    """Envelope written to the channel key."""
    type: str
    payload: dict[str, Any]
    client_id: str
    seq: int
    timestamp: str


MessageHandler = Callable[[BroadcastMessage], None]


class BroadcastChannel(ABC):
    """Publish/subscribe between clients that share an origin."""

    @abstractmethod
    def publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        """Send a change to the other clients. Returns False if it could not be written."""

    @abstractmethod
    def subscribe(self, event_type: str, handler: MessageHandler) -> Callable[[], None]:
        """Receive changes of a type (or "*"). Returns an unsubscribe callable."""

    @abstractmethod
    def close(self) -> None:
        """Stop receiving and drop every subscription."""


class StorageBroadcastChannel(BroadcastChannel):
    """BroadcastChannel over a shared, observable storage key."""

    def __init__(self, storage: SharedStorage, client_id: str, key: str = "wholesale_sync_channel"):
        self.storage = storage
        self.client_id = client_id
        self.key = key
        self._seq = 0
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._last_seen: dict[str, int] = {}
        self._pending: Optional[asyncio.Handle] = None
        self._unwatch: Optional[Callable[[], None]] = storage.watch(self._on_storage_change)

    def publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        self._seq += 1
        message = BroadcastMessage(
            type=event_type,
            payload=payload,
            client_id=self.client_id,
            seq=self._seq,
            timestamp=utcnow().isoformat(),
        )
        try:
            self.storage.set_item(self.key, json.dumps(asdict(message), default=str))
        except CapacityError as e:
            logger.warning(f"[{self.client_id}] Could not broadcast {event_type} (seq {self._seq}): {e}")
            return False
        return True

    def subscribe(self, event_type: str, handler: MessageHandler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def close(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._handlers.clear()

    # =========================================================================
    # Delivery
    # =========================================================================

    def _on_storage_change(self, key: str) -> None:
        if key != self.key or self._pending is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop running (plain synchronous use): deliver right away
            self._deliver()
            return
        self._pending = loop.call_soon(self._deliver)

    def _deliver(self) -> None:
        self._pending = None
        raw = self.storage.get_item(self.key)
        if raw is None:
            return
        try:
            message = BroadcastMessage(**json.loads(raw))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"[{self.client_id}] Ignoring malformed broadcast envelope: {e}")
            return

        if message.client_id == self.client_id:
            return
        if message.seq <= self._last_seen.get(message.client_id, 0):
            return
        self._last_seen[message.client_id] = message.seq

        handlers = list(self._handlers.get(message.type, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception(f"[{self.client_id}] Broadcast handler failed for {message.type} from {message.client_id}")
