"""
Catalog service: admin commands on products.

Every command writes the local snapshot first (so the UI updates at once and
other tabs hear about it through the broadcast), then hands the change to
the sync adapter to push upstream. The remote echo later stamps the
server version onto the local record.
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from shared.exceptions import ProductNotFoundError
from shared.models import Product, utcnow
from shared.state_store import LocalStateStore, remove_record, upsert_record
from sync_engine.events import EventTypes, product_deleted_payload, product_payload

logger = logging.getLogger("catalog_service")

# Fields a client may never set on a product
_PROTECTED_FIELDS = {"id", "version"}


def _remote_fields(product: Product, fields: Optional[set[str]] = None) -> dict[str, Any]:
    """The JSON patch pushed upstream for a product."""
    doc = product.model_dump(mode="json", exclude=_PROTECTED_FIELDS)
    if fields is None:
        return doc
    return {k: v for k, v in doc.items() if k in fields}


class CatalogService:
    """
    Product commands for admin clients.

    Example:
        catalog = CatalogService(store, adapter)
        product = catalog.add_product({"name": "Hoodie", "price": "45.00", "stock": 40})
        catalog.adjust_stock(product.id, -5)
    """

    def __init__(self, store: LocalStateStore, adapter):
        self.store = store
        self.adapter = adapter

    def list_products(self) -> list[Product]:
        return self.store.get_products()

    def get_product(self, product_id: str) -> Product:
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def add_product(self, data: dict[str, Any]) -> Product:
        """
        Create a product. A missing id is generated.

        Raises:
            pydantic.ValidationError: If the product data is invalid
        """
        fields = {k: v for k, v in data.items() if k != "version"}
        fields.setdefault("id", f"prod-{uuid4().hex[:8]}")
        fields["last_modified"] = utcnow()
        product = Product.model_validate(fields)
        doc = product.model_dump(mode="json")

        self.store.write(
            lambda draft: upsert_record(draft["products"], doc),
            EventTypes.PRODUCT_ADDED,
            product_payload(product),
        )
        logger.info(f"Product added: {product.name} ({product.id}), stock {product.stock}")

        self.adapter.push_later("products", product.id, _remote_fields(product))
        return product

    def update_product(self, product_id: str, patch: dict[str, Any]) -> Product:
        """
        Apply a partial update.

        Raises:
            ProductNotFoundError: If the product does not exist
            pydantic.ValidationError: If the patched product is invalid
        """
        current = self.get_product(product_id)
        changes = {k: v for k, v in patch.items() if k not in _PROTECTED_FIELDS}
        updated = current.with_changes(**{**changes, "last_modified": utcnow()})
        doc = updated.model_dump(mode="json")

        self.store.write(
            lambda draft: upsert_record(draft["products"], doc),
            EventTypes.PRODUCT_UPDATED,
            product_payload(updated),
        )
        logger.info(f"Product updated: {product_id} ({', '.join(sorted(changes)) or 'no fields'})")

        # status may follow from stock, so push it along with the changed fields
        pushed = set(changes) | {"status", "last_modified"}
        self.adapter.push_later("products", product_id, _remote_fields(updated, pushed))
        return updated

    def replace_products(self, data: list[dict[str, Any]]) -> list[Product]:
        """
        Replace the whole catalog, e.g. from an admin import.

        Products missing from data are deleted upstream as well.

        Raises:
            pydantic.ValidationError: If any product is invalid (nothing is written)
        """
        now = utcnow()
        versions = {p.id: p.version for p in self.store.get_products()}
        products = []
        for fields in data:
            fields = {k: v for k, v in fields.items() if k != "version"}
            fields.setdefault("id", f"prod-{uuid4().hex[:8]}")
            fields.update(last_modified=now, version=versions.get(fields["id"], 0))
            products.append(Product.model_validate(fields))
        docs = [p.model_dump(mode="json") for p in products]
        removed = set(versions) - {p.id for p in products}

        def apply(draft: dict[str, Any]) -> None:
            draft["products"] = docs

        self.store.write(apply, EventTypes.PRODUCTS_UPDATED, {"products": docs})
        logger.info(f"Catalog replaced: {len(products)} product(s), {len(removed)} removed")

        for product in products:
            self.adapter.push_later("products", product.id, _remote_fields(product))
        for product_id in sorted(removed):
            self.adapter.delete_later("products", product_id)
        return products

    def adjust_stock(self, product_id: str, delta: int) -> Product:
        """Add (or remove, with a negative delta) stock. Never goes below zero."""
        current = self.get_product(product_id)
        return self.update_product(product_id, {"stock": max(0, current.stock + delta)})

    def delete_product(self, product_id: str) -> None:
        """
        Remove a product from the catalog.

        Raises:
            ProductNotFoundError: If the product does not exist
        """
        self.get_product(product_id)

        def apply(draft: dict[str, Any]) -> None:
            remove_record(draft["products"], product_id)

        self.store.write(apply, EventTypes.PRODUCT_DELETED, product_deleted_payload(product_id))
        logger.info(f"Product deleted: {product_id}")
        self.adapter.delete_later("products", product_id)
