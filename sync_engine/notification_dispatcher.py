"""
Notification Dispatcher.

Turns domain events into notifications, stores them in the inbox (through the
Local State Store), pushes them to the remote notifications collection and
presents the ones meant for the current recipient one at a time.

Design decisions:
- All "when to notify" logic is here; services only publish events
- Only events produced by this client create notifications. Other clients
  receive the stored notification through the remote feed instead.
- Notification ids are deterministic (e.g. order_placed:<order id>) so the
  same fact reported by several clients collapses into one notification
- Delivery filters, in order: audience, role restriction, per-session
  dedupe, recency window
- Presentation is sequential and non-overlapping; the inbox keeps every
  notification regardless of presentation
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

from shared.config import SyncSettings
from shared.models import Notification, Order, Recipient, utcnow
from shared.state_store import LocalStateStore, find_record
from shared.templates import NotificationType, format_money, render_notification, restricted_role
from sync_engine.event_bus import Event, EventBus
from sync_engine.events import EventTypes, SyncStatus

logger = logging.getLogger("notification_dispatcher")

PresentHandler = Callable[[Notification], None]


class NotificationDispatcher:
    """
    Event-driven notification fan-out for one client.

    Example:
        dispatcher = NotificationDispatcher(store, bus, settings, Recipient(user_id="admin-1", role="admin"))
        dispatcher.start()
        dispatcher.on_present(lambda n: print(n.title))
    """

    def __init__(
        self,
        store: LocalStateStore,
        event_bus: EventBus,
        settings: SyncSettings,
        recipient: Recipient,
        adapter=None,
    ):
        self.store = store
        self.event_bus = event_bus
        self.settings = settings
        self.recipient = recipient
        self.adapter = adapter

        self.visible: Optional[Notification] = None
        self.presented: list[Notification] = []
        self._delivered_ids: set[str] = set()
        self._present_queue: deque[Notification] = deque()
        self._present_ready = asyncio.Event()
        self._present_handlers: list[PresentHandler] = []
        self._presenter: Optional[asyncio.Task] = None
        self._unsubscribers: list[Callable[[], None]] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Subscribe to domain events and start presenting."""
        if self._unsubscribers:
            logger.warning("NotificationDispatcher already started")
            return

        handlers = {
            EventTypes.ORDER_ADDED: self._handle_order_added,
            EventTypes.ORDER_UPDATED: self._handle_order_updated,
            EventTypes.INVENTORY_LOW: self._handle_inventory_low,
            EventTypes.OUT_OF_STOCK: self._handle_out_of_stock,
            EventTypes.APPLICATION_SUBMITTED: self._handle_application_submitted,
            EventTypes.SYNC_STATUS: self._handle_sync_status,
            EventTypes.SNAPSHOT_REPLACED: self._handle_snapshot_replaced,
            EventTypes.DATA_RESET: self._handle_data_reset,
            EventTypes.NOTIFICATION: self._handle_notification,
        }
        for event_type, handler in handlers.items():
            self._unsubscribers.append(self.event_bus.subscribe(event_type, handler))

        self._presenter = asyncio.get_running_loop().create_task(self._present_loop(), name="notifications:present")
        logger.info(f"NotificationDispatcher started for {self.recipient.user_id} ({self.recipient.role})")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._presenter is not None:
            self._presenter.cancel()
            self._presenter = None
        self._present_handlers.clear()

    # =========================================================================
    # Public API
    # =========================================================================

    def publish(self, notification: Notification, push: bool = True) -> bool:
        """
        Store a notification in the inbox and fan it out.

        Returns:
            False if a notification with the same id already exists
        """
        doc = notification.model_dump(mode="json")
        if find_record(self.store.read().get("notifications", []), notification.id) is not None:
            logger.debug(f"Notification {notification.id} already stored")
            return False

        # The NOTIFICATION event triggers delivery to this client's recipient
        self.store.write(
            lambda draft: draft.setdefault("notifications", []).append(doc),
            EventTypes.NOTIFICATION,
            {"notification": doc},
        )
        if push and self.adapter is not None:
            self.adapter.push_later("notifications", notification.id, doc, create_only=True)
        return True

    def subscribe(self, recipient: Recipient) -> list[Notification]:
        """Make recipient the active one and return their inbox."""
        if recipient != self.recipient:
            self.recipient = recipient
            self._delivered_ids.clear()
        return self.inbox()

    def on_present(self, handler: PresentHandler) -> Callable[[], None]:
        """Be called each time a notification becomes visible."""
        self._present_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._present_handlers:
                self._present_handlers.remove(handler)

        return unsubscribe

    def inbox(self) -> list[Notification]:
        """Every stored notification for the active recipient, newest first."""
        visible = [n for n in self.store.get_notifications() if self._addressed_to_recipient(n)]
        return sorted(visible, key=lambda n: n.created_at, reverse=True)

    def unread_count(self) -> int:
        return sum(1 for n in self.inbox() if not n.read)

    def mark_read(self, notification_ids: list[str]) -> int:
        """Mark notifications as read. Already-read ids are ignored. Returns how many changed."""
        wanted = set(notification_ids)
        pending = [
            r["id"] for r in self.store.read().get("notifications", [])
            if isinstance(r, dict) and r.get("id") in wanted and not r.get("read")
        ]
        if not pending:
            return 0

        def apply(draft: dict[str, Any]) -> None:
            for record in draft.get("notifications", []):
                if isinstance(record, dict) and record.get("id") in pending:
                    record["read"] = True

        self.store.write(apply, EventTypes.NOTIFICATIONS_UPDATED, {"read": pending})
        return len(pending)

    def mark_all_read(self) -> int:
        return self.mark_read([n.id for n in self.inbox() if not n.read])

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop notifications older than the retention window. Returns the count removed."""
        cutoff = (now or utcnow()) - timedelta(days=self.settings.notification_retention_days)
        expired = {n.id for n in self.store.get_notifications() if n.created_at < cutoff}
        if not expired:
            return 0

        def apply(draft: dict[str, Any]) -> None:
            draft["notifications"] = [
                r for r in draft.get("notifications", [])
                if not (isinstance(r, dict) and r.get("id") in expired)
            ]

        self.store.write(apply, EventTypes.NOTIFICATIONS_UPDATED, {"pruned": sorted(expired)})
        logger.info(f"Pruned {len(expired)} expired notification(s)")
        return len(expired)

    # =========================================================================
    # Filtering & presentation
    # =========================================================================

    def _addressed_to_recipient(self, notification: Notification) -> bool:
        if not self.recipient.matches_audience(notification.audience):
            return False
        role = restricted_role(notification.type)
        return role is None or role == self.recipient.role

    def _deliver(self, notification: Notification) -> bool:
        if not self._addressed_to_recipient(notification):
            return False
        if notification.id in self._delivered_ids:
            return False
        if notification.created_at < utcnow() - timedelta(hours=self.settings.notification_recency_hours):
            logger.debug(f"Notification {notification.id} is too old to present")
            return False

        self._delivered_ids.add(notification.id)
        self._present_queue.append(notification)
        self._present_ready.set()
        return True

    async def _present_loop(self) -> None:
        while True:
            while not self._present_queue:
                self._present_ready.clear()
                await self._present_ready.wait()
            notification = self._present_queue.popleft()
            self.visible = notification
            self.presented.append(notification)
            for handler in list(self._present_handlers):
                try:
                    handler(notification)
                except Exception:
                    logger.exception(f"Present handler failed for {notification.id}")
            await asyncio.sleep(self.settings.toast_duration)
            self.visible = None

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _notify(
        self,
        notification_id: str,
        notification_type: NotificationType,
        audience: str,
        data: dict[str, Any],
        push: bool = True,
        **template_vars,
    ) -> bool:
        title, message = render_notification(notification_type, **template_vars)
        notification = Notification(
            id=notification_id,
            type=notification_type,
            audience=audience,
            title=title,
            message=message,
            data=data,
        )
        return self.publish(notification, push=push)

    def _handle_notification(self, event: Event) -> None:
        try:
            notification = Notification.model_validate(event.payload["notification"])
        except (KeyError, ValidationError) as e:
            logger.warning(f"Ignoring malformed notification event {event.event_id[:8]}: {e}")
            return
        self._deliver(notification)

    def _handle_order_added(self, event: Event) -> None:
        if event.remote:
            return
        order = Order.model_validate(event.payload["order"])
        total = format_money(order.totals.total)
        item_count = sum(line.quantity for line in order.items)

        self._notify(
            f"order_placed:{order.id}", NotificationType.ORDER_PLACED, order.user_id,
            {"order_id": order.id},
            order_id=order.id, total=total, item_count=item_count,
        )
        self._notify(
            f"new_order:{order.id}", NotificationType.NEW_ORDER, "admin",
            {"order_id": order.id, "user_id": order.user_id},
            order_id=order.id, user_id=order.user_id, total=total,
        )
        logger.info(f"Order notifications published for {order.id}")

    def _handle_order_updated(self, event: Event) -> None:
        if event.remote:
            return
        previous = event.payload.get("previous_status")
        order = Order.model_validate(event.payload["order"])
        if previous is None or previous == order.status:
            return

        tracking_note = f" Tracking: {order.tracking}" if order.tracking else ""
        self._notify(
            f"order_status:{order.id}:{order.status}", NotificationType.ORDER_STATUS_CHANGED, order.user_id,
            {"order_id": order.id, "status": order.status, "previous_status": previous},
            order_id=order.id, status=order.status, tracking_note=tracking_note,
        )

    def _handle_inventory_low(self, event: Event) -> None:
        payload = event.payload
        self._notify(
            f"inventory_low:{payload['product_id']}:{payload['version']}", NotificationType.INVENTORY_LOW, "admin",
            {"product_id": payload["product_id"], "stock": payload["stock"]},
            product_name=payload["product_name"], stock=payload["stock"],
        )

    def _handle_out_of_stock(self, event: Event) -> None:
        payload = event.payload
        self._notify(
            f"out_of_stock:{payload['product_id']}:{payload['version']}", NotificationType.OUT_OF_STOCK, "admin",
            {"product_id": payload["product_id"]},
            product_name=payload["product_name"],
        )

    def _handle_application_submitted(self, event: Event) -> None:
        application = event.payload["application"]
        self._notify(
            f"new_application:{application['id']}", NotificationType.NEW_APPLICATION, "admin",
            {"application_id": application["id"]},
            business_name=application["business_name"], contact_email=application["contact_email"],
        )

    def _handle_sync_status(self, event: Event) -> None:
        if event.remote or event.payload.get("status") != SyncStatus.DEGRADED.value:
            return
        self._notify(
            f"sync_degraded:{self.store.client_id}:{event.event_id[:8]}", NotificationType.SYNC_DEGRADED,
            self.recipient.user_id, {"reason": event.payload.get("reason", "")}, push=False,
        )

    def _handle_snapshot_replaced(self, event: Event) -> None:
        if event.remote or event.payload.get("reason") != "recovery":
            return
        timestamp = event.payload["backup_timestamp"]
        self._notify(
            f"data_recovered:{self.store.client_id}:{timestamp}", NotificationType.DATA_RECOVERED,
            self.recipient.user_id, {"backup_timestamp": timestamp}, push=False,
            backup_timestamp=timestamp,
        )

    def _handle_data_reset(self, event: Event) -> None:
        if event.remote:
            return
        self._notify(
            f"data_reset:{self.store.client_id}:{event.event_id[:8]}", NotificationType.DATA_RESET,
            self.recipient.user_id, {}, push=False,
        )
