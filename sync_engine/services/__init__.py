"""
Domain services for inbound commands.

- Catalog: admin product commands
- Cart: per-user carts with quantity bounds
- Inventory: remote stock reservation and per-order decrements
- Ordering: checkout and order status

Each service writes through the Local State Store (which publishes the change
events) and hands remote work to the sync adapter. None of them knows about
notifications.
"""

from sync_engine.services.cart import CartService
from sync_engine.services.catalog import CatalogService
from sync_engine.services.inventory import InventoryService
from sync_engine.services.ordering import OrderingService

__all__ = [
    "CartService",
    "CatalogService",
    "InventoryService",
    "OrderingService",
]
