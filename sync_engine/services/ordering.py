"""
Ordering service: checkout and order status updates.

Checkout turns a user's cart into an order. Online, stock is reserved on the
remote store first and the order contains what was actually granted. In
local-only mode the stock is taken from the local snapshot and the remote
decrement waits in the outbox until the connection returns.

Key points:
- A second checkout for the same user while one is running is rejected
  (CommandInProgressError); the guard is released on every exit path
- Order lines are copies of the cart lines, never references to them
- Status changes follow the order state machine; setting the current status
  again is a no-op
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from shared.config import SyncSettings
from shared.exceptions import (
    EmptyCartError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    RemoteWriteError,
)
from shared.models import Order, OrderLine, OrderStatus, calculate_totals, utcnow
from shared.state_store import LocalStateStore, upsert_record
from sync_engine.events import EventTypes, order_payload
from sync_engine.locks import CommandGuard
from sync_engine.services.cart import CartService
from sync_engine.services.inventory import InventoryService

logger = logging.getLogger("ordering_service")


def new_order_id() -> str:
    return f"ord-{utcnow().strftime('%Y%m%d')}-{uuid4().hex[:6]}"


class OrderingService:
    """
    Order commands.

    Example:
        ordering = OrderingService(store, carts, inventory, adapter, CommandGuard(), settings)
        order = await ordering.checkout("partner-1")
        ordering.update_order_status(order.id, "PROCESSING")
    """

    def __init__(
        self,
        store: LocalStateStore,
        carts: CartService,
        inventory: InventoryService,
        adapter,
        guard: CommandGuard,
        settings: SyncSettings,
    ):
        self.store = store
        self.carts = carts
        self.inventory = inventory
        self.adapter = adapter
        self.guard = guard
        self.settings = settings

    def list_orders(self, user_id: Optional[str] = None) -> list[Order]:
        return sorted(self.store.get_orders(user_id), key=lambda o: o.created_at, reverse=True)

    def get_order(self, order_id: str) -> Order:
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def checkout(self, user_id: str) -> Order:
        """
        Place an order for everything in the user's cart.

        Raises:
            CommandInProgressError: A checkout for this user is already running
            EmptyCartError: The cart is empty
            InsufficientStockError: Nothing in the cart could be granted
        """
        async with self.guard.hold(f"checkout:{user_id}"):
            cart = self.carts.get_cart(user_id)
            if not cart.items:
                raise EmptyCartError(user_id)

            lines: list[OrderLine] = []
            applied: list[str] = []
            use_remote = self.adapter.online

            for item in cart.items:
                granted = None
                if use_remote:
                    try:
                        granted = await self.inventory.reserve(item.product_id, item.quantity)
                    except RemoteWriteError as e:
                        logger.warning(f"Checkout {user_id}: reservation failed, continuing locally: {e}")
                        use_remote = False
                    else:
                        if granted:
                            applied.append(item.product_id)
                if granted is None:
                    granted = self.inventory.take_local(item.product_id, item.quantity)

                if granted < item.quantity:
                    logger.warning(f"Checkout {user_id}: {item.product_id} granted {granted} of {item.quantity}")
                if granted > 0:
                    lines.append(OrderLine(
                        product_id=item.product_id,
                        name=item.name,
                        quantity=granted,
                        unit_price=item.unit_price,
                    ))

            if not lines:
                first = cart.items[0]
                raise InsufficientStockError(first.product_id, first.quantity, 0)

            order = Order(
                id=new_order_id(),
                user_id=user_id,
                items=lines,
                totals=calculate_totals(lines, self.settings),
                status=OrderStatus.PENDING,
                applied_items=applied,
                inventory_applied=len(applied) == len(lines),
            )
            doc = order.model_dump(mode="json")
            self.store.write(
                lambda draft: upsert_record(draft["orders"], doc),
                EventTypes.ORDER_ADDED,
                order_payload(order),
            )
            self.carts.clear_cart(user_id)
            logger.info(f"Order {order.id} placed by {user_id}: {len(lines)} line(s), total {order.totals.total}")

            self.adapter.push_later("orders", order.id, {k: v for k, v in doc.items() if k != "version"})
            if not order.inventory_applied:
                self.inventory.schedule_apply(order)
            return order

    def update_order_status(self, order_id: str, status: str, tracking: Optional[str] = None) -> Order:
        """
        Move an order to a new status.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If the state machine forbids the move
            ValueError: If status is not a known order status
        """
        order = self.get_order(order_id)
        new_status = OrderStatus(status).value

        if new_status == order.status and (tracking is None or tracking == order.tracking):
            logger.debug(f"Order {order_id} already {new_status}")
            return order
        if not order.can_transition_to(new_status):
            raise InvalidTransitionError(order_id, order.status, new_status)

        updated = order.with_changes(
            status=new_status,
            tracking=tracking if tracking is not None else order.tracking,
            updated_at=utcnow(),
        )
        doc = updated.model_dump(mode="json")
        self.store.write(
            lambda draft: upsert_record(draft["orders"], doc),
            EventTypes.ORDER_UPDATED,
            order_payload(updated, previous_status=order.status),
        )
        logger.info(f"Order {order_id}: {order.status} -> {new_status}")

        patch: dict[str, Any] = {k: doc[k] for k in ("status", "tracking", "updated_at")}
        self.adapter.push_later("orders", order_id, patch)
        return updated
