"""
Outbound event definitions.

The Local State Store, the sync adapter and the domain services publish these
events on the client's EventBus; the UI layer and the notification dispatcher
consume them.

Design decisions:
- Events are named in past tense (order_added, not add_order)
- Payloads carry full JSON documents, never deltas, so a consumer that missed
  an intermediate event still ends up with the right state
- Helper functions build correctly shaped payloads
"""

from enum import Enum
from typing import Any, Optional

from shared.models import Order, Product


class EventTypes:
    """Constants for event type names."""
    # Catalog
    PRODUCTS_UPDATED = "products_updated"
    PRODUCT_ADDED = "product_added"
    PRODUCT_UPDATED = "product_updated"
    PRODUCT_DELETED = "product_deleted"
    # A server version of a product, as delivered by the remote feed
    PRODUCT_CONFIRMED = "product_confirmed"

    # Orders & carts
    ORDER_ADDED = "order_added"
    ORDER_UPDATED = "order_updated"
    CART_UPDATED = "cart_updated"

    # Inventory alerts
    INVENTORY_LOW = "inventory_low"
    OUT_OF_STOCK = "out_of_stock"

    # Notifications
    NOTIFICATION = "notification"
    NOTIFICATIONS_UPDATED = "notifications_updated"

    # Partners
    APPLICATION_SUBMITTED = "application_submitted"

    # System
    SYNC_STATUS = "sync_status"
    SNAPSHOT_REPLACED = "snapshot_replaced"
    DATA_RESET = "data_reset"


class SyncStatus(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    ERROR = "error"


# Event types whose payload describes product stock; consumers re-read the
# snapshot for these instead of trusting the payload.
PRODUCT_EVENTS = {
    EventTypes.PRODUCTS_UPDATED,
    EventTypes.PRODUCT_ADDED,
    EventTypes.PRODUCT_UPDATED,
    EventTypes.PRODUCT_DELETED,
}


def product_payload(product: Product) -> dict[str, Any]:
    return {"product": product.model_dump(mode="json")}


def product_deleted_payload(product_id: str) -> dict[str, Any]:
    return {"product_id": product_id}


def order_payload(order: Order, previous_status: Optional[str] = None) -> dict[str, Any]:
    payload = {"order": order.model_dump(mode="json")}
    if previous_status is not None:
        payload["previous_status"] = previous_status
    return payload


def cart_payload(user_id: str, items: list[dict[str, Any]]) -> dict[str, Any]:
    return {"user_id": user_id, "items": items}


def inventory_alert_payload(product: Product, threshold: int) -> dict[str, Any]:
    return {
        "product_id": product.id,
        "product_name": product.name,
        "stock": product.stock,
        "threshold": threshold,
        "version": product.version,
    }


def sync_status_payload(status: SyncStatus, reason: str = "") -> dict[str, Any]:
    return {"status": status.value, "reason": reason}
