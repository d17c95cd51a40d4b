"""
Inventory service: stock reservation and per-order stock decrements.

Online checkouts reserve stock on the remote store with compare-and-set
pushes, so two clients racing for the last units can never sell more than
exists. Orders placed in local-only mode are decremented later by the
apply_order queue item, which records each applied line on the order so a
retried item never decrements twice.
"""

import logging
from typing import Any, Optional

from shared.exceptions import RemoteConflictError, RemoteWriteError
from shared.models import Order, OrderLine, Product, utcnow
from shared.state_store import LocalStateStore, upsert_record
from sync_engine.events import EventTypes, product_payload
from sync_engine.processing_queue import ProcessingQueue, QueueItem

logger = logging.getLogger("inventory_service")

APPLY_ORDER = "apply_order"

# Compare-and-set attempts before giving up on a contended product
CAS_ATTEMPTS = 5


def _stock_patch(product: Product) -> dict[str, Any]:
    return {
        "stock": product.stock,
        "status": product.status,
        "last_modified": product.last_modified.isoformat(),
    }


class InventoryService:
    """
    Remote-first stock bookkeeping.

    Example:
        inventory = InventoryService(store, adapter, side_effects)
        granted = await inventory.reserve("prod-001", 3)   # may be less than 3
    """

    def __init__(self, store: LocalStateStore, adapter, queue: ProcessingQueue):
        self.store = store
        self.adapter = adapter
        queue.register(APPLY_ORDER, self._handle_apply_order)

    async def reserve(self, product_id: str, quantity: int) -> Optional[int]:
        """
        Take up to quantity units from the remote stock.

        Returns:
            Units granted (0 if sold out), or None if the remote store has no
            such product
        Raises:
            RemoteWriteError: If the remote is unreachable or stays contended
        """
        for attempt in range(1, CAS_ATTEMPTS + 1):
            doc = await self.adapter.feed.fetch("products", product_id)
            if doc is None:
                return None
            current = Product.model_validate(doc)
            granted = min(quantity, current.stock)
            if granted <= 0:
                return 0

            updated = current.with_stock(current.stock - granted)
            try:
                await self.adapter.push("products", product_id, _stock_patch(updated), expected_version=current.version)
            except RemoteConflictError:
                logger.info(f"Stock of {product_id} changed concurrently, retrying (attempt {attempt})")
                continue
            logger.info(f"Took {granted} of {product_id} from remote stock ({current.stock} -> {updated.stock})")
            return granted

        raise RemoteWriteError(
            f"Stock of {product_id} stayed contended",
            {"product_id": product_id, "attempts": CAS_ATTEMPTS},
        )

    def take_local(self, product_id: str, quantity: int) -> int:
        """
        Take up to quantity units from the local snapshot only.

        Used in local-only mode; the remote decrement follows via apply_order.
        """
        product = self.store.get_product(product_id)
        if product is None or not product.is_available:
            return 0
        granted = min(quantity, product.stock)
        updated = product.with_stock(product.stock - granted)
        doc = updated.model_dump(mode="json")
        self.store.write(
            lambda draft: upsert_record(draft["products"], doc),
            EventTypes.PRODUCT_UPDATED,
            product_payload(updated),
        )
        logger.info(f"Took {granted} of {product_id} from local stock ({product.stock} -> {updated.stock})")
        return granted

    def schedule_apply(self, order: Order) -> None:
        """Queue the remote decrement of an order's unapplied lines."""
        self.adapter.submit(QueueItem(kind=APPLY_ORDER, payload={"order_id": order.id}))

    async def apply_order(self, order_id: str) -> bool:
        """
        Decrement remote stock for each line not yet applied. Idempotent.

        Returns:
            True if anything was decremented
        """
        order = self.store.get_order(order_id)
        if order is None:
            logger.warning(f"Cannot apply inventory for unknown order {order_id}")
            return False
        if order.inventory_applied:
            return False

        applied = list(order.applied_items)
        for line in order.items:
            if line.product_id in applied:
                continue
            await self._decrement_line(line)
            applied.append(line.product_id)
            self._record_applied(order_id, applied, done=False)

        self._record_applied(order_id, applied, done=True)
        logger.info(f"Inventory applied for order {order_id}")
        return True

    async def _decrement_line(self, line: OrderLine) -> None:
        # The units were promised to the buyer while offline, so the whole
        # quantity is taken and stock is clamped at zero
        for attempt in range(1, CAS_ATTEMPTS + 1):
            doc = await self.adapter.feed.fetch("products", line.product_id)
            if doc is None:
                logger.warning(f"Product {line.product_id} no longer exists remotely, skipping decrement")
                return
            current = Product.model_validate(doc)
            updated = current.with_stock(current.stock - line.quantity)
            try:
                await self.adapter.push("products", line.product_id, _stock_patch(updated), expected_version=current.version)
                return
            except RemoteConflictError:
                logger.info(f"Stock of {line.product_id} changed concurrently, retrying (attempt {attempt})")
        raise RemoteWriteError(
            f"Stock of {line.product_id} stayed contended",
            {"product_id": line.product_id, "attempts": CAS_ATTEMPTS},
        )

    def _record_applied(self, order_id: str, applied: list[str], done: bool) -> None:
        def apply(draft: dict[str, Any]) -> None:
            for record in draft["orders"]:
                if record.get("id") == order_id:
                    record["applied_items"] = list(applied)
                    record["inventory_applied"] = done
                    record["updated_at"] = utcnow().isoformat()

        self.store.write(apply)
        self.adapter.push_later("orders", order_id, {"applied_items": list(applied), "inventory_applied": done})

    async def _handle_apply_order(self, item: QueueItem) -> None:
        if not self.adapter.online:
            self.adapter.submit(QueueItem(kind=APPLY_ORDER, payload=item.payload))
            return
        await self.apply_order(item.payload["order_id"])
