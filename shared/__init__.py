"""
Shared domain layer for the wholesale portal sync engine.

- Domain models (Product, Cart, Order, Notification, Backup)
- Settings and the exception taxonomy
- SharedStorage, the same-origin key/value backend
- LocalStateStore, the single owner of a client's snapshot
- Notification templates
"""

from shared.config import SyncSettings, get_settings
from shared.models import (
    Backup,
    Cart,
    CartItem,
    CartTotals,
    Notification,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    ProductStatus,
    Recipient,
)
from shared.state_store import LocalStateStore
from shared.storage import SharedStorage

__all__ = [
    "Backup",
    "Cart",
    "CartItem",
    "CartTotals",
    "LocalStateStore",
    "Notification",
    "Order",
    "OrderLine",
    "OrderStatus",
    "Product",
    "ProductStatus",
    "Recipient",
    "SharedStorage",
    "SyncSettings",
    "get_settings",
]
