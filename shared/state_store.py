"""
Local State Store: the single versioned snapshot document of one client.

The snapshot holds products, orders, carts, config and notifications as plain
JSON-compatible data and is persisted as one text value in SharedStorage. It
is kept as raw data (not models) so that a damaged snapshot can still be read,
checked and replaced by the backup manager.

Design decisions:
- The store is the only writer of the snapshot key
- write() has no suspension point, so two writes never interleave on the loop
- Every write validates structure before committing; on failure the previous
  snapshot is kept
- Every write stamps last_sync, bumps version and publishes one change event
- Typed readers skip malformed single records instead of failing the read
"""

import copy
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from shared.config import SyncSettings
from shared.exceptions import StructuralError
from shared.models import CartItem, Notification, Order, Product, utcnow
from shared.storage import SharedStorage

logger = logging.getLogger("state_store")

Snapshot = dict[str, Any]
Mutator = Callable[[Snapshot], Optional[Snapshot]]

ModelT = TypeVar("ModelT", bound=BaseModel)

# Required top-level fields and their types
REQUIRED_FIELDS: dict[str, type] = {
    "products": list,
    "orders": list,
    "config": dict,
}

# Fields that are optional but must have the right type when present
OPTIONAL_FIELDS: dict[str, type] = {
    "carts": dict,
    "notifications": list,
}


def default_snapshot(settings: SyncSettings) -> Snapshot:
    """An empty but structurally valid snapshot."""
    return {
        "products": [],
        "orders": [],
        "carts": {},
        "config": settings.business_config(),
        "notifications": [],
        "last_sync": None,
        "version": 0,
    }


def validate_structure(doc: Any) -> None:
    """
    Check the structural invariants of a snapshot.

    Raises:
        StructuralError: If a required field is missing or a collection has the
            wrong type or holds non-object elements.
    """
    if not isinstance(doc, dict):
        raise StructuralError("Snapshot is not an object", {"type": type(doc).__name__})

    for name, expected in REQUIRED_FIELDS.items():
        if name not in doc:
            raise StructuralError(f"Snapshot is missing '{name}'", {"field": name})
        if not isinstance(doc[name], expected):
            raise StructuralError(
                f"Snapshot field '{name}' has the wrong type",
                {"field": name, "expected": expected.__name__, "actual": type(doc[name]).__name__},
            )

    for name, expected in OPTIONAL_FIELDS.items():
        if name in doc and not isinstance(doc[name], expected):
            raise StructuralError(
                f"Snapshot field '{name}' has the wrong type",
                {"field": name, "expected": expected.__name__, "actual": type(doc[name]).__name__},
            )

    for name in ("products", "orders"):
        for index, element in enumerate(doc[name]):
            if not isinstance(element, dict):
                raise StructuralError(
                    f"Snapshot collection '{name}' holds a non-object element",
                    {"field": name, "index": index},
                )

    for user_id, items in doc.get("carts", {}).items():
        if not isinstance(items, list):
            raise StructuralError("Cart is not a list", {"field": "carts", "user_id": user_id})


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_snapshot(doc: Snapshot) -> str:
    return json.dumps(doc, default=_json_default)


def find_record(records: list[dict[str, Any]], record_id: str) -> Optional[dict[str, Any]]:
    for record in records:
        if record.get("id") == record_id:
            return record
    return None


def upsert_record(records: list[dict[str, Any]], record: dict[str, Any]) -> None:
    """Replace the record with the same id in place, or append it."""
    for index, existing in enumerate(records):
        if existing.get("id") == record.get("id"):
            records[index] = record
            return
    records.append(record)


def remove_record(records: list[dict[str, Any]], record_id: str) -> bool:
    for index, existing in enumerate(records):
        if existing.get("id") == record_id:
            del records[index]
            return True
    return False


class LocalStateStore:
    """
    Owns the persisted snapshot of one client.

    Several clients on the same device may share one SharedStorage (and thus
    one snapshot); each has its own store instance and event bus.
    """

    def __init__(
        self,
        storage: SharedStorage,
        event_bus,
        settings: SyncSettings,
        client_id: str,
        key: Optional[str] = None,
    ):
        self.storage = storage
        self.event_bus = event_bus
        self.settings = settings
        self.client_id = client_id
        self.key = key or settings.snapshot_key

    # =========================================================================
    # Raw access
    # =========================================================================

    def read_raw(self) -> Optional[str]:
        """The stored snapshot text, exactly as persisted."""
        return self.storage.get_item(self.key)

    def read(self) -> Snapshot:
        """
        Parse and validate the current snapshot.

        An absent snapshot reads as the default. The returned dict is a private
        copy; changing it has no effect on the store.

        Raises:
            StructuralError: If the stored text does not parse or is malformed
        """
        raw = self.read_raw()
        if raw is None:
            return default_snapshot(self.settings)
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StructuralError("Snapshot does not parse", {"error": str(e)}) from e
        validate_structure(doc)
        return doc

    def ensure_initialized(self) -> bool:
        """Persist the default snapshot if none exists. Returns True if one was written."""
        if self.read_raw() is not None:
            return False
        self.storage.set_item(self.key, dump_snapshot(default_snapshot(self.settings)))
        logger.info(f"[{self.client_id}] Initialized empty snapshot")
        return True

    # =========================================================================
    # Mutations
    # =========================================================================

    def write(
        self,
        mutator: Mutator,
        event_type: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        remote: bool = False,
    ) -> Snapshot:
        """
        Apply a mutator to a copy of the snapshot and commit the result.

        The mutator may change the draft in place (returning None) or return a
        new snapshot. When event_type is given, one change event is published
        after the commit.

        Raises:
            StructuralError: If the current or resulting snapshot is malformed
            CapacityError: If the storage backend is full
        """
        current = self.read()
        draft = copy.deepcopy(current)
        result = mutator(draft)
        if result is None:
            result = draft

        validate_structure(result)
        result["last_sync"] = utcnow().isoformat()
        result["version"] = int(current.get("version") or 0) + 1

        self.storage.set_item(self.key, dump_snapshot(result))
        logger.debug(f"[{self.client_id}] Committed snapshot v{result['version']} ({event_type or 'silent'})")

        if event_type:
            self.event_bus.emit(event_type, payload or {}, source=self.client_id, remote=remote)
        return result

    def merge(
        self,
        patch: dict[str, Any],
        event_type: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Snapshot:
        """Shallow-merge top-level fields into the snapshot."""
        def apply(draft: Snapshot) -> None:
            draft.update(copy.deepcopy(patch))

        return self.write(apply, event_type, payload)

    def replace(
        self,
        snapshot: Snapshot,
        event_type: Optional[str] = "snapshot_replaced",
        payload: Optional[dict[str, Any]] = None,
    ) -> Snapshot:
        """
        Replace the whole snapshot, ignoring whatever is stored now.

        Used by recovery, so the current (possibly corrupt) value is never read.
        """
        validate_structure(snapshot)
        result = copy.deepcopy(snapshot)
        result.setdefault("carts", {})
        result.setdefault("notifications", [])
        result["last_sync"] = utcnow().isoformat()
        result["version"] = int(result.get("version") or 0) + 1

        self.storage.set_item(self.key, dump_snapshot(result))
        logger.info(f"[{self.client_id}] Snapshot replaced (v{result['version']})")

        if event_type:
            self.event_bus.emit(event_type, payload or {}, source=self.client_id)
        return result

    def reset_to_default(self) -> Snapshot:
        logger.warning(f"[{self.client_id}] Resetting snapshot to defaults")
        return self.replace(default_snapshot(self.settings), event_type="data_reset")

    # =========================================================================
    # Typed readers
    # =========================================================================

    def _parse_records(self, model: type[ModelT], records: list[Any], collection: str) -> list[ModelT]:
        parsed = []
        for record in records:
            try:
                parsed.append(model.model_validate(record))
            except ValidationError as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(
                    f"[{self.client_id}] Skipping malformed {collection} record "
                    f"{record_id!r}: {e.error_count()} validation error(s)"
                )
        return parsed

    def get_products(self) -> list[Product]:
        return self._parse_records(Product, self.read()["products"], "products")

    def get_product(self, product_id: str) -> Optional[Product]:
        for product in self.get_products():
            if product.id == product_id:
                return product
        return None

    def get_orders(self, user_id: Optional[str] = None) -> list[Order]:
        orders = self._parse_records(Order, self.read()["orders"], "orders")
        if user_id is not None:
            orders = [o for o in orders if o.user_id == user_id]
        return orders

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.get_orders():
            if order.id == order_id:
                return order
        return None

    def get_cart_items(self, user_id: str) -> list[CartItem]:
        items = self.read().get("carts", {}).get(user_id, [])
        return self._parse_records(CartItem, items, f"cart:{user_id}")

    def get_cart_users(self) -> list[str]:
        return list(self.read().get("carts", {}))

    def get_notifications(self) -> list[Notification]:
        return self._parse_records(Notification, self.read().get("notifications", []), "notifications")
