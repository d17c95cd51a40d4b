"""
Remote live feed abstraction and an in-memory backend.

RemoteFeed is what the sync adapter talks to: per-collection change
subscriptions plus push/fetch operations. InMemoryRemoteStore plays the
authoritative server for demos and tests; each client gets its own
RemoteConnection to it.

Design decisions:
- Every document carries a server-assigned, monotonically increasing
  `version` and an `updated_at` timestamp
- A client sees its own write twice: once immediately with
  has_pending_writes=True, then confirmed with the new server version
- expected_version turns a push into a compare-and-set
- Changes are delivered on the next loop iteration, never inside push()
- A disconnected connection misses changes; it must reconcile on reconnect
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shared.exceptions import RemoteConflictError, RemoteWriteError
from shared.models import utcnow

logger = logging.getLogger("remote")

COLLECTIONS = ("products", "orders", "applications", "notifications")


class ChangeType:
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class DocumentChange:
    """One change notification from the remote feed."""
    collection: str
    change_type: str
    doc_id: str
    data: Optional[dict[str, Any]]
    version: int
    has_pending_writes: bool = False


ChangeCallback = Callable[[DocumentChange], None]
StatusCallback = Callable[[bool], None]


class RemoteFeed(ABC):
    """A live, subscribable view of the remote collections."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    def subscribe(self, collection: str, callback: ChangeCallback) -> Callable[[], None]:
        """Deliver the current documents as `added`, then incremental changes."""

    @abstractmethod
    async def push(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Merge a patch into a document (creating it if needed).

        Returns:
            The confirmed document
        Raises:
            RemoteConflictError: expected_version did not match
            RemoteWriteError: The remote is unreachable
        """

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Be told when the connection goes up (True) or down (False)."""


# =============================================================================
# In-memory server
# =============================================================================

class InMemoryRemoteStore:
    """
    Authoritative document store shared by every RemoteConnection.

    Example usage:
        server = InMemoryRemoteStore()
        server.seed("products", [{"id": "p1", "name": "Tee", "price": "10.00", "stock": 5}])
        conn = server.connect("tab-1")
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._connections: list["RemoteConnection"] = []
        self._online = True
        self.write_count = 0

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Simulate the server becoming (un)reachable for every client."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Remote store is now {'online' if online else 'offline'}")
        for connection in list(self._connections):
            connection._emit_status()

    def connect(self, client_id: str) -> "RemoteConnection":
        connection = RemoteConnection(self, client_id)
        self._connections.append(connection)
        return connection

    def _detach(self, connection: "RemoteConnection") -> None:
        if connection in self._connections:
            self._connections.remove(connection)

    # =========================================================================
    # Direct access (seeding and inspection)
    # =========================================================================

    def seed(self, collection: str, docs: list[dict[str, Any]]) -> None:
        """Insert documents as version 1 without notifying anyone."""
        for doc in docs:
            stored = copy.deepcopy(doc)
            stored["version"] = 1
            stored["updated_at"] = utcnow().isoformat()
            self._collections[collection][stored["id"]] = stored

    def documents(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._collections[collection].values()]

    def document(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc else None

    # =========================================================================
    # Server operations
    # =========================================================================

    async def _round_trip(self, connection: "RemoteConnection", operation: str) -> None:
        if not connection.connected:
            raise RemoteWriteError(
                f"Remote unreachable during {operation}",
                {"client_id": connection.client_id, "operation": operation},
            )
        await asyncio.sleep(self.latency)
        if not connection.connected:
            raise RemoteWriteError(
                f"Connection lost during {operation}",
                {"client_id": connection.client_id, "operation": operation},
            )

    async def write(
        self,
        connection: "RemoteConnection",
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int],
    ) -> dict[str, Any]:
        current = self._collections[collection].get(doc_id)

        # Latency compensation: the writer sees its own change before the server does
        preview = {**(current or {}), **copy.deepcopy(patch), "id": doc_id}
        connection._deliver(DocumentChange(
            collection=collection,
            change_type=ChangeType.MODIFIED if current else ChangeType.ADDED,
            doc_id=doc_id,
            data=preview,
            version=current["version"] if current else 0,
            has_pending_writes=True,
        ))

        await self._round_trip(connection, f"push {collection}/{doc_id}")

        # Re-read: another client may have written during the round trip
        current = self._collections[collection].get(doc_id)
        current_version = current["version"] if current else 0
        if expected_version is not None and expected_version != current_version:
            raise RemoteConflictError(
                f"Version conflict on {collection}/{doc_id}",
                {"collection": collection, "doc_id": doc_id,
                 "expected": expected_version, "actual": current_version},
            )

        stored = {**(current or {}), **copy.deepcopy(patch)}
        stored["id"] = doc_id
        stored["version"] = current_version + 1
        stored["updated_at"] = utcnow().isoformat()
        self._collections[collection][doc_id] = stored
        self.write_count += 1

        self._fan_out(DocumentChange(
            collection=collection,
            change_type=ChangeType.MODIFIED if current else ChangeType.ADDED,
            doc_id=doc_id,
            data=stored,
            version=stored["version"],
        ))
        return copy.deepcopy(stored)

    async def remove(self, connection: "RemoteConnection", collection: str, doc_id: str) -> None:
        await self._round_trip(connection, f"delete {collection}/{doc_id}")
        current = self._collections[collection].pop(doc_id, None)
        if current is None:
            return
        self._fan_out(DocumentChange(
            collection=collection,
            change_type=ChangeType.REMOVED,
            doc_id=doc_id,
            data=None,
            version=current["version"] + 1,
        ))

    async def read_all(self, connection: "RemoteConnection", collection: str) -> list[dict[str, Any]]:
        await self._round_trip(connection, f"fetch {collection}")
        return self.documents(collection)

    async def read(self, connection: "RemoteConnection", collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        await self._round_trip(connection, f"fetch {collection}/{doc_id}")
        return self.document(collection, doc_id)

    def _fan_out(self, change: DocumentChange) -> None:
        for connection in list(self._connections):
            connection._deliver(copy.deepcopy(change))


# =============================================================================
# Per-client connection
# =============================================================================

class RemoteConnection(RemoteFeed):
    """One client's session with an InMemoryRemoteStore."""

    def __init__(self, server: InMemoryRemoteStore, client_id: str):
        self.server = server
        self.client_id = client_id
        self._link_up = True
        self._subscriptions: dict[str, list[ChangeCallback]] = defaultdict(list)
        self._status_callbacks: list[StatusCallback] = []
        self._last_status = self.connected

    @property
    def connected(self) -> bool:
        return self._link_up and self.server.online

    def disconnect(self) -> None:
        """Simulate this client losing its network link."""
        self._link_up = False
        self._emit_status()

    def reconnect(self) -> None:
        self._link_up = True
        self._emit_status()

    def close(self) -> None:
        self._subscriptions.clear()
        self._status_callbacks.clear()
        self.server._detach(self)

    # =========================================================================
    # RemoteFeed
    # =========================================================================

    def subscribe(self, collection: str, callback: ChangeCallback) -> Callable[[], None]:
        self._subscriptions[collection].append(callback)
        logger.debug(f"[{self.client_id}] Subscribed to {collection}")

        if self.connected:
            for doc in self.server.documents(collection):
                self._schedule(callback, DocumentChange(
                    collection=collection,
                    change_type=ChangeType.ADDED,
                    doc_id=doc["id"],
                    data=doc,
                    version=doc["version"],
                ))

        def unsubscribe() -> None:
            if callback in self._subscriptions[collection]:
                self._subscriptions[collection].remove(callback)

        return unsubscribe

    async def push(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]:
        return await self.server.write(self, collection, doc_id, patch, expected_version)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.server.remove(self, collection, doc_id)

    async def fetch_all(self, collection: str) -> list[dict[str, Any]]:
        return await self.server.read_all(self, collection)

    async def fetch(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        return await self.server.read(self, collection, doc_id)

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    # =========================================================================
    # Internals
    # =========================================================================

    def _emit_status(self) -> None:
        status = self.connected
        if status == self._last_status:
            return
        self._last_status = status
        logger.info(f"[{self.client_id}] Remote connection {'up' if status else 'down'}")
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception(f"[{self.client_id}] Status callback failed")

    def _deliver(self, change: DocumentChange) -> None:
        if not self.connected:
            return
        for callback in list(self._subscriptions.get(change.collection, [])):
            self._schedule(callback, change)

    def _schedule(self, callback: ChangeCallback, change: DocumentChange) -> None:
        def run() -> None:
            # Dropped if unsubscribed or disconnected in the meantime
            if not self.connected or callback not in self._subscriptions.get(change.collection, []):
                return
            try:
                callback(change)
            except Exception:
                logger.exception(f"[{self.client_id}] Change callback failed for {change.collection}/{change.doc_id}")

        asyncio.get_running_loop().call_soon(run)
