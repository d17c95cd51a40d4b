"""
Low-stock monitor.

Watches confirmed product versions and raises inventory alerts on threshold
crossings, not on every stock mutation. It keeps per-product alert state
between events, so a product sliding 11 -> 9 -> 8 -> 7 produces a single
inventory_low.

Design decisions:
- Only server-confirmed versions are evaluated (product_confirmed events from
  the sync adapter). Every client sees the same sequence of versions, so every
  client derives the same alert ids; an unconfirmed local edit never alerts
- A version at or below the last one evaluated for a product is ignored
- One inventory_low per downward crossing of the threshold; one out_of_stock
  on reaching zero
- Alert state re-arms when stock rises back above the threshold
- Products known when the monitor starts are primed silently, so a restart
  does not repeat old alerts. The engine starts the monitor after its first
  sync has settled. A restored or reset snapshot is primed the same way
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from shared.config import SyncSettings
from shared.models import Product
from shared.state_store import LocalStateStore
from sync_engine.event_bus import Event, EventBus
from sync_engine.events import EventTypes, inventory_alert_payload

logger = logging.getLogger("stock_monitor")


@dataclass
class StockAlertState:
    """Alert state of one product."""
    product_id: str
    version: int = 0
    low_alerted: bool = False
    out_alerted: bool = False


class LowStockMonitor:
    """
    Emits inventory_low / out_of_stock events on the bus.

    Example usage:
        monitor = LowStockMonitor(store, bus, settings)
        monitor.start()
        # confirmed stock 11 -> 9 publishes one inventory_low event
    """

    def __init__(self, store: LocalStateStore, event_bus: EventBus, settings: SyncSettings):
        self.store = store
        self.event_bus = event_bus
        self.threshold = settings.low_stock_threshold
        self._states: dict[str, StockAlertState] = {}
        self._unsubscribers: list[Callable[[], None]] = []

    def start(self) -> None:
        self.prime()
        self._unsubscribers.extend([
            self.event_bus.subscribe(EventTypes.PRODUCT_CONFIRMED, self._handle_confirmed),
            self.event_bus.subscribe(EventTypes.PRODUCT_DELETED, self._handle_deleted),
            self.event_bus.subscribe(EventTypes.SNAPSHOT_REPLACED, self._handle_replaced),
            self.event_bus.subscribe(EventTypes.DATA_RESET, self._handle_replaced),
        ])
        logger.info(f"LowStockMonitor started (threshold {self.threshold}, {len(self._states)} primed)")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def prime(self) -> None:
        """Record the current alert state of every product without emitting."""
        self._states = {
            product.id: StockAlertState(
                product_id=product.id,
                version=product.version,
                low_alerted=product.stock <= self.threshold,
                out_alerted=product.stock == 0,
            )
            for product in self.store.get_products()
        }

    def _handle_confirmed(self, event: Event) -> None:
        self.observe(Product.model_validate(event.payload["product"]))

    def _handle_deleted(self, event: Event) -> None:
        self._states.pop(event.payload.get("product_id"), None)

    def _handle_replaced(self, event: Event) -> None:
        self.prime()

    def observe(self, product: Product) -> Optional[str]:
        """
        Evaluate one confirmed product version against its alert state.

        Returns:
            The event type emitted, if any
        """
        state = self._states.get(product.id)
        if state is None:
            state = self._states[product.id] = StockAlertState(product_id=product.id)
        elif product.version <= state.version:
            return None
        state.version = product.version

        if product.stock > self.threshold:
            state.low_alerted = False
            state.out_alerted = False
            return None

        if product.stock == 0:
            state.low_alerted = True
            if state.out_alerted:
                return None
            state.out_alerted = True
            logger.info(f"Out of stock: {product.name} ({product.id}) v{product.version}")
            self._emit(EventTypes.OUT_OF_STOCK, product)
            return EventTypes.OUT_OF_STOCK

        state.out_alerted = False
        if state.low_alerted:
            return None
        state.low_alerted = True
        logger.info(f"Low stock: {product.name} ({product.id}) at {product.stock}, v{product.version}")
        self._emit(EventTypes.INVENTORY_LOW, product)
        return EventTypes.INVENTORY_LOW

    def _emit(self, event_type: str, product: Product) -> None:
        self.event_bus.emit(event_type, inventory_alert_payload(product, self.threshold), source=self.store.client_id)
