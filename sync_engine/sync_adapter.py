"""
Remote Sync Adapter: keeps the Local State Store in step with the remote feed.

Incoming: every change from the products, orders, applications and
notifications subscriptions becomes an item on the inbound ProcessingQueue;
the queue handlers below are the only code that applies remote-originated
changes to the local snapshot.

Outgoing: local writes are pushed upstream through the outbound queue
(push_later), which owns retries. push() itself never retries.

Design decisions:
- Echo detection uses the server-assigned document version. Pending-write
  echoes are ignored; a change whose version is not newer than the local
  record is a no-op. This makes every apply handler idempotent.
- A confirmed echo of our own write (same content, new version) updates the
  local version silently, without a change event. Every product version,
  applied or stale, is still announced as product_confirmed
- Order inventory bookkeeping (applied_items, inventory_applied) only grows:
  incoming orders are merged with the local record, never allowed to undo it
- Readiness is polled a bounded number of times; after that the adapter runs
  in local-only (degraded) mode and work for the remote goes to an outbox
- Reconnecting runs a full reconciliation pass, then flushes the outbox
- A damaged local snapshot found while applying a change hands over to the
  on_structural_error hook (the backup manager's integrity check), then the
  change is applied again
- A permanently failed side effect puts the adapter in ERROR status until the
  next reconciliation; pushes keep flowing meanwhile
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from shared.config import SyncSettings
from shared.exceptions import RemoteConflictError, RemoteWriteError, StructuralError
from shared.models import Application, Notification, Order, Product
from shared.state_store import LocalStateStore, find_record, remove_record, upsert_record
from sync_engine.event_bus import EventBus
from sync_engine.events import (
    EventTypes,
    SyncStatus,
    order_payload,
    product_deleted_payload,
    product_payload,
    sync_status_payload,
)
from sync_engine.processing_queue import ProcessingQueue, QueueItem
from sync_engine.remote import COLLECTIONS, ChangeType, DocumentChange, RemoteFeed

logger = logging.getLogger("sync_adapter")

# Queue item kinds owned by the adapter
APPLY_CHANGE = "apply_change"
PUSH = "push"
DELETE = "delete"

# Server-managed or volatile fields ignored when comparing content
_VOLATILE_FIELDS = {"version", "updated_at", "last_modified"}


class RemoteSyncAdapter:
    """Bridges one client's LocalStateStore and a RemoteFeed."""

    def __init__(
        self,
        feed: RemoteFeed,
        store: LocalStateStore,
        event_bus: EventBus,
        inbound: ProcessingQueue,
        outbound: ProcessingQueue,
        settings: SyncSettings,
        client_id: str,
    ):
        self.feed = feed
        self.store = store
        self.event_bus = event_bus
        self.inbound = inbound
        self.outbound = outbound
        self.settings = settings
        self.client_id = client_id

        self.status = SyncStatus.DEGRADED
        self._announced_status: Optional[SyncStatus] = None
        self.outbox: list[QueueItem] = []
        self._subscriptions: list[Callable[[], None]] = []
        self._unsubscribe_status: Optional[Callable[[], None]] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._application_versions: dict[str, int] = {}
        self._stopped = False
        # Called when the local snapshot turns out to be damaged mid-apply
        self.on_structural_error: Optional[Callable[[], Awaitable[Any]]] = None

        inbound.register(APPLY_CHANGE, self._handle_change)
        outbound.register(PUSH, self._handle_push)
        outbound.register(DELETE, self._handle_delete)
        outbound.on_dead_letter = self._on_permanent_failure

    @property
    def online(self) -> bool:
        return self.status != SyncStatus.DEGRADED and self.feed.connected

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """
        Wait (bounded) for the remote, then subscribe and reconcile.

        Returns:
            True if connected, False if running in local-only mode
        """
        self._stopped = False
        self._unsubscribe_status = self.feed.on_status_change(self._on_status_change)

        if not await self._wait_until_ready():
            logger.warning(
                f"[{self.client_id}] Remote not ready after {self.settings.remote_ready_attempts} "
                f"attempts, continuing in local-only mode"
            )
            self._enter_degraded("remote not ready")
            return False
        return await self.reconcile()

    async def _wait_until_ready(self) -> bool:
        for attempt in range(1, self.settings.remote_ready_attempts + 1):
            if self.feed.connected:
                return True
            logger.debug(f"[{self.client_id}] Waiting for remote (attempt {attempt})")
            await asyncio.sleep(self.settings.remote_ready_interval)
        return self.feed.connected

    def stop(self) -> None:
        """Synchronously drop every subscription held by the adapter."""
        self._stopped = True
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        if self._unsubscribe_status is not None:
            self._unsubscribe_status()
            self._unsubscribe_status = None
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
        self._reconcile_task = None

    def _subscribe_all(self) -> None:
        for collection in COLLECTIONS:
            self._subscriptions.append(self.feed.subscribe(collection, self._on_change))
        logger.info(f"[{self.client_id}] Subscribed to {', '.join(COLLECTIONS)}")

    # =========================================================================
    # Connectivity
    # =========================================================================

    def _on_status_change(self, connected: bool) -> None:
        if self._stopped:
            return
        if connected:
            self.request_reconcile()
        else:
            self._enter_degraded("connection lost")

    def _set_status(self, status: SyncStatus, reason: str = "") -> None:
        self.status = status
        if status == self._announced_status:
            return
        self._announced_status = status
        self.event_bus.emit(EventTypes.SYNC_STATUS, sync_status_payload(status, reason), source=self.client_id)

    def _on_permanent_failure(self, item: QueueItem) -> None:
        if self.status == SyncStatus.DEGRADED:
            return
        self._set_status(SyncStatus.ERROR, f"{item.kind} failed permanently: {item.last_error}")

    def _enter_degraded(self, reason: str) -> None:
        if self._announced_status != SyncStatus.DEGRADED:
            logger.warning(f"[{self.client_id}] Entering local-only mode: {reason}")
        self._set_status(SyncStatus.DEGRADED, reason)

    def request_reconcile(self) -> asyncio.Task:
        """Start a reconciliation pass, or return the one already running."""
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile())
        return self._reconcile_task

    async def reconcile(self) -> bool:
        return await self.request_reconcile()

    async def wait_reconciled(self) -> None:
        """Wait for the running reconciliation pass, if there is one."""
        task = self._reconcile_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _reconcile(self) -> bool:
        if not self.feed.connected:
            return False
        try:
            if not self._subscriptions:
                # A fresh subscription delivers the full current set
                self._subscribe_all()
            else:
                await self._pull_all()
        except RemoteWriteError as e:
            logger.warning(f"[{self.client_id}] Reconciliation failed, staying in local-only mode: {e}")
            self._enter_degraded("reconciliation failed")
            return False

        self.status = SyncStatus.CONNECTED
        flushed = self._flush_outbox()
        logger.info(f"[{self.client_id}] Reconciled with remote, flushed {flushed} deferred item(s)")
        self._set_status(SyncStatus.CONNECTED)
        return True

    async def _pull_all(self) -> None:
        for collection in COLLECTIONS:
            docs = await self.feed.fetch_all(collection)
            for doc in docs:
                self._enqueue_change(DocumentChange(
                    collection=collection,
                    change_type=ChangeType.MODIFIED,
                    doc_id=doc["id"],
                    data=doc,
                    version=doc.get("version", 0),
                ))

            if collection == "products":
                # Confirmed products that vanished remotely while we were offline
                remote_ids = {doc["id"] for doc in docs}
                for record in self.store.read()["products"]:
                    if record.get("id") not in remote_ids and int(record.get("version") or 0) > 0:
                        self._enqueue_change(DocumentChange(
                            collection=collection,
                            change_type=ChangeType.REMOVED,
                            doc_id=record["id"],
                            data=None,
                            version=int(record["version"]) + 1,
                        ))

    def _flush_outbox(self) -> int:
        deferred, self.outbox = self.outbox, []
        for item in deferred:
            self.outbound.enqueue(QueueItem(kind=item.kind, payload=item.payload))
        return len(deferred)

    # =========================================================================
    # Outgoing
    # =========================================================================

    async def push(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Push a patch now. No retry here; failures propagate.

        Raises:
            RemoteWriteError: If offline or the remote rejects the write
        """
        if not self.online:
            raise RemoteWriteError(
                f"Cannot push {collection}/{doc_id} while in local-only mode",
                {"collection": collection, "doc_id": doc_id},
            )
        return await self.feed.push(collection, doc_id, patch, expected_version)

    def submit(self, item: QueueItem) -> None:
        """Hand side-effect work to the outbound queue, or park it in the outbox."""
        if self.online:
            self.outbound.enqueue(item)
        else:
            self.outbox.append(item)
            logger.info(f"[{self.client_id}] Deferred {item.kind} until reconnection ({len(self.outbox)} in outbox)")

    def push_later(self, collection: str, doc_id: str, patch: dict[str, Any], create_only: bool = False) -> None:
        self.submit(QueueItem(kind=PUSH, payload={
            "collection": collection,
            "doc_id": doc_id,
            "patch": patch,
            "create_only": create_only,
        }))

    def delete_later(self, collection: str, doc_id: str) -> None:
        self.submit(QueueItem(kind=DELETE, payload={"collection": collection, "doc_id": doc_id}))

    async def _handle_push(self, item: QueueItem) -> None:
        if not self.online:
            self.outbox.append(QueueItem(kind=item.kind, payload=item.payload))
            return
        payload = item.payload
        expected = 0 if payload.get("create_only") else None
        try:
            await self.feed.push(payload["collection"], payload["doc_id"], payload["patch"], expected)
        except RemoteConflictError:
            if payload.get("create_only"):
                logger.debug(f"[{self.client_id}] {payload['collection']}/{payload['doc_id']} already exists remotely")
                return
            raise

    async def _handle_delete(self, item: QueueItem) -> None:
        if not self.online:
            self.outbox.append(QueueItem(kind=item.kind, payload=item.payload))
            return
        await self.feed.delete(item.payload["collection"], item.payload["doc_id"])

    # =========================================================================
    # Incoming
    # =========================================================================

    def _on_change(self, change: DocumentChange) -> None:
        if change.has_pending_writes:
            logger.debug(f"[{self.client_id}] Ignoring pending-write echo for {change.collection}/{change.doc_id}")
            return
        self._enqueue_change(change)

    def _enqueue_change(self, change: DocumentChange) -> None:
        self.inbound.enqueue(QueueItem(kind=APPLY_CHANGE, payload={"change": change}))

    async def _handle_change(self, item: QueueItem) -> None:
        change: DocumentChange = item.payload["change"]
        handler = {
            "products": self._apply_product,
            "orders": self._apply_order,
            "notifications": self._apply_notification,
            "applications": self._apply_application,
        }.get(change.collection)
        if handler is None:
            logger.warning(f"[{self.client_id}] No handler for collection '{change.collection}'")
            return
        try:
            handler(change)
        except StructuralError as e:
            if self.on_structural_error is None:
                raise
            logger.error(f"[{self.client_id}] Local snapshot damaged while applying {change.collection}/{change.doc_id}: {e}")
            await self.on_structural_error()
            handler(change)

    def _apply_product(self, change: DocumentChange) -> None:
        snapshot = self.store.read()
        local = find_record(snapshot["products"], change.doc_id)

        if change.change_type == ChangeType.REMOVED:
            if local is None:
                return

            def drop(draft: dict[str, Any]) -> None:
                remove_record(draft["products"], change.doc_id)

            self.store.write(
                drop,
                EventTypes.PRODUCT_DELETED,
                product_deleted_payload(change.doc_id),
                remote=True,
            )
            return

        try:
            incoming = Product.model_validate({**change.data, "version": change.version})
        except ValidationError as e:
            logger.warning(f"[{self.client_id}] Skipping malformed product {change.doc_id} v{change.version}: {e.error_count()} error(s)")
            return

        if local is not None and int(local.get("version") or 0) >= incoming.version:
            logger.debug(f"[{self.client_id}] Stale product change {change.doc_id} v{incoming.version}, ignored")
            # Another tab on this device may have applied it first
            self._confirm_product(incoming)
            return

        doc = incoming.model_dump(mode="json")
        event_type = None
        if local is None:
            event_type = EventTypes.PRODUCT_ADDED
        elif not _same_content(Product, local, incoming):
            event_type = EventTypes.PRODUCT_UPDATED

        self.store.write(
            lambda draft: upsert_record(draft["products"], doc),
            event_type,
            product_payload(incoming),
            remote=True,
        )
        self._confirm_product(incoming)

    def _confirm_product(self, product: Product) -> None:
        """Announce a server version of a product, whether or not it changed the snapshot."""
        self.event_bus.emit(EventTypes.PRODUCT_CONFIRMED, product_payload(product), source=self.client_id, remote=True)

    def _apply_order(self, change: DocumentChange) -> None:
        if change.change_type == ChangeType.REMOVED:
            logger.warning(f"[{self.client_id}] Ignoring remote removal of order {change.doc_id}; orders are never deleted")
            return

        try:
            incoming = Order.model_validate({**change.data, "version": change.version})
        except ValidationError as e:
            logger.warning(f"[{self.client_id}] Skipping malformed order {change.doc_id} v{change.version}: {e.error_count()} error(s)")
            return

        local = find_record(self.store.read()["orders"], change.doc_id)
        if local is not None and int(local.get("version") or 0) >= incoming.version:
            logger.debug(f"[{self.client_id}] Stale order change {change.doc_id} v{incoming.version}, ignored")
            return

        event_type = EventTypes.ORDER_ADDED
        previous_status = None
        if local is not None:
            local_applied = local.get("applied_items") or []
            incoming = incoming.with_changes(
                applied_items=list(dict.fromkeys(local_applied + incoming.applied_items)),
                inventory_applied=bool(local.get("inventory_applied")) or incoming.inventory_applied,
            )
            event_type = None if _same_content(Order, local, incoming) else EventTypes.ORDER_UPDATED
            if local.get("status") != incoming.status:
                previous_status = local.get("status")

        doc = incoming.model_dump(mode="json")
        self.store.write(
            lambda draft: upsert_record(draft["orders"], doc),
            event_type,
            order_payload(incoming, previous_status),
            remote=True,
        )

    def _apply_notification(self, change: DocumentChange) -> None:
        if change.change_type == ChangeType.REMOVED:
            return
        if find_record(self.store.read().get("notifications", []), change.doc_id) is not None:
            return
        try:
            notification = Notification.model_validate(change.data)
        except ValidationError as e:
            logger.warning(f"[{self.client_id}] Skipping malformed notification {change.doc_id}: {e.error_count()} error(s)")
            return

        doc = notification.model_dump(mode="json")
        self.store.write(
            lambda draft: draft.setdefault("notifications", []).append(doc),
            EventTypes.NOTIFICATION,
            {"notification": doc},
            remote=True,
        )

    def _apply_application(self, change: DocumentChange) -> None:
        if change.change_type == ChangeType.REMOVED:
            self._application_versions.pop(change.doc_id, None)
            return

        seen_version = self._application_versions.get(change.doc_id)
        if seen_version is not None and seen_version >= change.version:
            return
        try:
            application = Application.model_validate(change.data)
        except ValidationError as e:
            logger.warning(f"[{self.client_id}] Skipping malformed application {change.doc_id}: {e.error_count()} error(s)")
            return

        self._application_versions[change.doc_id] = change.version
        if seen_version is None and application.status == "pending":
            self.event_bus.emit(
                EventTypes.APPLICATION_SUBMITTED,
                {"application": application.model_dump(mode="json")},
                source=self.client_id,
                remote=True,
            )


def _same_content(model, local: dict[str, Any], incoming) -> bool:
    """True if a local record and an incoming model differ only in volatile fields."""
    try:
        current = model.model_validate(local)
    except ValidationError:
        return False
    return current.model_dump(exclude=_VOLATILE_FIELDS) == incoming.model_dump(exclude=_VOLATILE_FIELDS)
