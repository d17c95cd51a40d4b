"""
SyncEngine: composition root for one client (one tab or device session).

Builds every component with explicit references, wires them together, and
exposes the inbound commands the UI layer (or the HTTP API) calls.

Wiring:
- Local events on the bus are forwarded to the broadcast channel; events
  received from the channel are republished on the bus marked remote, and
  are never forwarded again
- Any product change triggers cart reconciliation against the catalog
- A restored or reset snapshot triggers a reconciliation pass, so remote
  changes the backup predates are pulled again
- Low-stock alerts start after the first sync has settled
- Remote changes flow feed -> inbound queue -> sync adapter -> store
- Side effects (pushes, inventory decrements) flow through the outbound queue
"""

import asyncio
import logging
from typing import Any, Callable, Optional
from uuid import uuid4

from shared.config import SyncSettings, get_settings
from shared.exceptions import StructuralError
from shared.models import Application, Cart, CartTotals, Notification, Order, Product, Recipient
from shared.state_store import LocalStateStore
from shared.storage import SharedStorage
from sync_engine.backup import BackupManager
from sync_engine.broadcast import BroadcastChannel, BroadcastMessage, StorageBroadcastChannel
from sync_engine.event_bus import Event, EventBus
from sync_engine.events import PRODUCT_EVENTS, EventTypes
from sync_engine.locks import CommandGuard
from sync_engine.notification_dispatcher import NotificationDispatcher
from sync_engine.processing_queue import ProcessingQueue
from sync_engine.remote import RemoteFeed
from sync_engine.services import CartService, CatalogService, InventoryService, OrderingService
from sync_engine.stock_monitor import LowStockMonitor
from sync_engine.sync_adapter import RemoteSyncAdapter

logger = logging.getLogger("engine")

# Derived per client; every client computes these itself
LOCAL_ONLY_EVENTS = {
    EventTypes.PRODUCT_CONFIRMED,
    EventTypes.INVENTORY_LOW,
    EventTypes.OUT_OF_STOCK,
    EventTypes.SYNC_STATUS,
}


class SyncEngine:
    """
    One client of the wholesale portal.

    Example usage:
        server = InMemoryRemoteStore()
        storage = SharedStorage()
        engine = SyncEngine("tab-1", storage, server.connect("tab-1"), Recipient(user_id="partner-1"))
        await engine.start()
        engine.add_to_cart("partner-1", "prod-001", 2)
        order = await engine.checkout("partner-1")
        await engine.stop()
    """

    def __init__(
        self,
        client_id: str,
        storage: SharedStorage,
        remote: RemoteFeed,
        recipient: Recipient,
        settings: Optional[SyncSettings] = None,
        channel: Optional[BroadcastChannel] = None,
    ):
        self.client_id = client_id
        self.settings = settings or get_settings()
        self.storage = storage
        self.remote = remote

        self.bus = EventBus()
        self.store = LocalStateStore(storage, self.bus, self.settings, client_id)
        self.channel = channel or StorageBroadcastChannel(storage, client_id, self.settings.channel_key)

        self.inbound_queue = ProcessingQueue(
            "remote_changes", self.settings.queue_max_retries, self.settings.queue_retry_delay
        )
        self.side_effects = ProcessingQueue(
            "side_effects", self.settings.queue_max_retries, self.settings.queue_retry_delay
        )
        self.adapter = RemoteSyncAdapter(
            remote, self.store, self.bus, self.inbound_queue, self.side_effects, self.settings, client_id
        )

        self.guard = CommandGuard()
        self.catalog = CatalogService(self.store, self.adapter)
        self.carts = CartService(self.store, self.settings)
        self.inventory = InventoryService(self.store, self.adapter, self.side_effects)
        self.ordering = OrderingService(
            self.store, self.carts, self.inventory, self.adapter, self.guard, self.settings
        )
        self.backups = BackupManager(self.store, storage, self.settings, adapter=self.adapter)
        self.adapter.on_structural_error = self.backups.check_integrity
        self.notifications = NotificationDispatcher(
            self.store, self.bus, self.settings, recipient, adapter=self.adapter
        )
        self.stock_monitor = LowStockMonitor(self.store, self.bus, self.settings)

        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, background_jobs: bool = True) -> None:
        """
        Start the client.

        Args:
            background_jobs: Run the scheduled backup and integrity timers
        """
        if self._started:
            return
        self.store.ensure_initialized()

        self._unsubscribers.append(self.bus.subscribe("*", self._forward_to_channel))
        self._unsubscribers.append(self.channel.subscribe("*", self._on_broadcast))
        for event_type in PRODUCT_EVENTS | {EventTypes.SNAPSHOT_REPLACED}:
            self._unsubscribers.append(self.bus.subscribe(event_type, self._reconcile_carts))
        for event_type in (EventTypes.SNAPSHOT_REPLACED, EventTypes.DATA_RESET):
            self._unsubscribers.append(self.bus.subscribe(event_type, self._resync_after_recovery))

        self.notifications.start()
        await self.adapter.start()
        await self.settle()
        self.stock_monitor.start()
        if background_jobs:
            self.backups.start()

        self._started = True
        logger.info(f"[{self.client_id}] Engine started ({self.adapter.status.value})")

    def close(self) -> None:
        """Synchronously drop every subscription and cancel every timer."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.adapter.stop()
        self.backups.stop()
        self.notifications.stop()
        self.stock_monitor.stop()
        self.channel.close()
        self.inbound_queue.close()
        self.side_effects.close()
        self._started = False

    async def stop(self) -> None:
        self.close()
        # Let cancelled tasks unwind
        await asyncio.sleep(0)
        logger.info(f"[{self.client_id}] Engine stopped")

    async def settle(self, rounds: int = 5) -> None:
        """Wait until both queues are idle (work on one can feed the other)."""
        for _ in range(rounds):
            await asyncio.sleep(0)
            await self.adapter.wait_reconciled()
            await self.inbound_queue.join()
            await self.side_effects.join()
            await asyncio.sleep(0)
            if self.inbound_queue.is_idle and self.side_effects.is_idle:
                return

    # =========================================================================
    # Wiring
    # =========================================================================

    def _forward_to_channel(self, event: Event) -> None:
        if event.remote or event.event_type in LOCAL_ONLY_EVENTS:
            return
        self.channel.publish(event.event_type, event.payload)

    def _on_broadcast(self, message: BroadcastMessage) -> None:
        self.bus.emit(message.type, message.payload, source=message.client_id, remote=True)

    def _reconcile_carts(self, event: Event) -> None:
        self.carts.reconcile()

    def _resync_after_recovery(self, event: Event) -> None:
        if event.remote or not self.adapter.online:
            return
        logger.info(f"[{self.client_id}] Local snapshot replaced ({event.event_type}), pulling remote state again")
        self.adapter.request_reconcile()

    # =========================================================================
    # Inbound commands
    # =========================================================================

    def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1) -> Cart:
        return self.carts.add_to_cart(user_id, product_id, quantity)

    def update_cart_quantity(self, user_id: str, item_id: str, quantity: int) -> Cart:
        return self.carts.update_cart_quantity(user_id, item_id, quantity)

    def remove_from_cart(self, user_id: str, item_id: str) -> Cart:
        return self.carts.remove_from_cart(user_id, item_id)

    def get_cart(self, user_id: str) -> Cart:
        return self.carts.get_cart(user_id)

    def cart_totals(self, user_id: str) -> CartTotals:
        return self.carts.totals(user_id)

    async def checkout(self, user_id: str) -> Order:
        return await self.ordering.checkout(user_id)

    def add_product(self, data: dict[str, Any]) -> Product:
        return self.catalog.add_product(data)

    def update_product(self, product_id: str, patch: dict[str, Any]) -> Product:
        return self.catalog.update_product(product_id, patch)

    def replace_products(self, products: list[dict[str, Any]]) -> list[Product]:
        return self.catalog.replace_products(products)

    def delete_product(self, product_id: str) -> None:
        self.catalog.delete_product(product_id)

    def update_order_status(self, order_id: str, status: str, tracking: Optional[str] = None) -> Order:
        return self.ordering.update_order_status(order_id, status, tracking)

    def submit_application(self, business_name: str, contact_email: str) -> Application:
        """Send a partner application to the remote applications collection."""
        application = Application(
            id=f"app-{uuid4().hex[:8]}",
            business_name=business_name,
            contact_email=contact_email,
        )
        self.adapter.push_later(
            "applications", application.id, application.model_dump(mode="json"), create_only=True
        )
        logger.info(f"[{self.client_id}] Application {application.id} submitted for {business_name}")
        return application

    def notifications_for(self, recipient: Optional[Recipient] = None) -> list[Notification]:
        if recipient is not None:
            return self.notifications.subscribe(recipient)
        return self.notifications.inbox()

    def mark_notifications_read(self, notification_ids: Optional[list[str]] = None) -> int:
        if notification_ids is None:
            return self.notifications.mark_all_read()
        return self.notifications.mark_read(notification_ids)

    def create_backup(self):
        return self.backups.snapshot()

    async def recover(self):
        return await self.backups.restore_latest_valid()

    async def sync_now(self) -> bool:
        """Run a full reconciliation pass and wait for its changes to apply."""
        connected = await self.adapter.reconcile()
        await self.settle()
        return connected

    def status(self) -> dict[str, Any]:
        snapshot_ok = True
        try:
            snapshot = self.store.read()
        except StructuralError:
            snapshot_ok = False
            snapshot = {}
        return {
            "client_id": self.client_id,
            "sync_status": self.adapter.status.value,
            "outbox": len(self.adapter.outbox),
            "snapshot_version": snapshot.get("version"),
            "last_sync": snapshot.get("last_sync"),
            "snapshot_ok": snapshot_ok,
            "queues": [self.inbound_queue.stats(), self.side_effects.stats()],
            "backups": self.backups.status(),
        }
