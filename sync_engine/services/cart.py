"""
Cart service: per-user carts in the local snapshot.

Quantities are bounded by 1 <= quantity <= min(product stock, configured
per-item maximum) after every add or update. Totals are never stored; they
are computed from the items whenever they are asked for.
"""

import logging
from typing import Any, Optional

from shared.config import SyncSettings
from shared.exceptions import CartItemNotFoundError, ProductNotFoundError, ProductUnavailableError
from shared.models import Cart, CartItem, CartTotals, Product, utcnow
from shared.state_store import LocalStateStore
from sync_engine.events import EventTypes, cart_payload

logger = logging.getLogger("cart_service")


class CartService:
    """
    Cart commands.

    Example:
        carts = CartService(store, settings)
        carts.add_to_cart("partner-1", "prod-001", 2)
        carts.totals("partner-1").total
    """

    def __init__(self, store: LocalStateStore, settings: SyncSettings):
        self.store = store
        self.settings = settings

    def _limit(self, product: Product) -> int:
        return min(product.stock, self.settings.max_quantity_per_item)

    def _available_product(self, product_id: str) -> Product:
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if not product.is_available:
            raise ProductUnavailableError(product_id, product.status, product.stock)
        return product

    def _save(self, user_id: str, items: list[CartItem]) -> Cart:
        docs = [item.model_dump(mode="json") for item in items]

        def apply(draft: dict[str, Any]) -> None:
            carts = draft.setdefault("carts", {})
            if docs:
                carts[user_id] = docs
            else:
                carts.pop(user_id, None)

        self.store.write(apply, EventTypes.CART_UPDATED, cart_payload(user_id, docs))
        return Cart(user_id=user_id, items=items)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_cart(self, user_id: str) -> Cart:
        return Cart(user_id=user_id, items=self.store.get_cart_items(user_id))

    def totals(self, user_id: str) -> CartTotals:
        return self.get_cart(user_id).totals(self.settings)

    # =========================================================================
    # Commands
    # =========================================================================

    def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1) -> Cart:
        """
        Add units of a product, merging with an existing line.

        The resulting quantity is clamped to the stock and per-item maximum.

        Raises:
            ValueError: If quantity < 1
            ProductNotFoundError, ProductUnavailableError
        """
        if quantity < 1:
            raise ValueError(f"Quantity must be at least 1, got {quantity}")
        product = self._available_product(product_id)
        limit = self._limit(product)

        items = self.store.get_cart_items(user_id)
        existing = next((i for i in items if i.product_id == product_id), None)
        if existing is not None:
            wanted = existing.quantity + quantity
            items = [
                i.model_copy(update={"quantity": min(wanted, limit), "updated_at": utcnow()})
                if i.product_id == product_id else i
                for i in items
            ]
        else:
            wanted = quantity
            items.append(CartItem(
                product_id=product.id,
                name=product.name,
                quantity=min(wanted, limit),
                unit_price=product.price,
            ))

        if wanted > limit:
            logger.warning(f"Clamped {product_id} in cart of {user_id} to {limit} (asked for {wanted})")
        logger.info(f"Cart {user_id}: added {product_id} x{quantity}")
        return self._save(user_id, items)

    def update_cart_quantity(self, user_id: str, item_id: str, quantity: int) -> Cart:
        """
        Set the quantity of a line. Zero or less removes it.

        Raises:
            CartItemNotFoundError, ProductNotFoundError, ProductUnavailableError
        """
        items = self.store.get_cart_items(user_id)
        if not any(i.product_id == item_id for i in items):
            raise CartItemNotFoundError(user_id, item_id)
        if quantity <= 0:
            return self.remove_from_cart(user_id, item_id)

        limit = self._limit(self._available_product(item_id))
        if quantity > limit:
            logger.warning(f"Clamped {item_id} in cart of {user_id} to {limit} (asked for {quantity})")
        items = [
            i.model_copy(update={"quantity": min(quantity, limit), "updated_at": utcnow()})
            if i.product_id == item_id else i
            for i in items
        ]
        return self._save(user_id, items)

    def remove_from_cart(self, user_id: str, item_id: str) -> Cart:
        items = self.store.get_cart_items(user_id)
        remaining = [i for i in items if i.product_id != item_id]
        if len(remaining) == len(items):
            raise CartItemNotFoundError(user_id, item_id)
        logger.info(f"Cart {user_id}: removed {item_id}")
        return self._save(user_id, remaining)

    def clear_cart(self, user_id: str) -> Cart:
        return self._save(user_id, [])

    def reconcile(self, products: Optional[list[Product]] = None) -> list[str]:
        """
        Bring every cart in line with the current catalog.

        Lines whose product vanished or became unavailable are dropped; lines
        above the new limit are clamped.

        Returns:
            User ids whose carts changed
        """
        catalog = {p.id: p for p in (products if products is not None else self.store.get_products())}
        changed = []
        for user_id in self.store.get_cart_users():
            items = self.store.get_cart_items(user_id)
            adjusted = []
            for item in items:
                product = catalog.get(item.product_id)
                if product is None or not product.is_available:
                    logger.info(f"Cart {user_id}: dropping {item.product_id}, no longer available")
                    continue
                limit = self._limit(product)
                if item.quantity > limit:
                    logger.info(f"Cart {user_id}: clamping {item.product_id} from {item.quantity} to {limit}")
                    item = item.model_copy(update={"quantity": limit, "updated_at": utcnow()})
                adjusted.append(item)

            if adjusted != items:
                self._save(user_id, adjusted)
                changed.append(user_id)
        return changed
