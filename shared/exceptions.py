"""
Exception taxonomy for the sync engine.

Every error carries a machine-readable code and a details dict so that the
place that catches it can log enough context (operation, identifiers, attempt
count) to diagnose the failure afterwards.

Groups:
- Integrity errors (StructuralError, ChecksumMismatchError) trigger recovery
- Remote errors (RemoteWriteError, RemoteConflictError) trigger queued retry
- CapacityError triggers backup pruning and a single retry
- Command errors are raised back to the caller of an inbound command
"""

from typing import Any, Optional

__all__ = [
    "SyncEngineError",
    "StructuralError",
    "ChecksumMismatchError",
    "CapacityError",
    "RemoteWriteError",
    "RemoteConflictError",
    "CommandError",
    "ProductNotFoundError",
    "ProductUnavailableError",
    "CartItemNotFoundError",
    "EmptyCartError",
    "InsufficientStockError",
    "OrderNotFoundError",
    "InvalidTransitionError",
    "CommandInProgressError",
]


class SyncEngineError(Exception):
    """Base exception for the sync engine."""

    def __init__(
        self,
        message: str,
        error_code: str = "SYNC_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} {self.details}"
        return self.message


# =============================================================================
# Integrity / storage
# =============================================================================

class StructuralError(SyncEngineError):
    """The local snapshot is malformed (unparseable or missing required fields)."""

    def __init__(self, message: str = "Malformed snapshot", details: Optional[dict[str, Any]] = None):
        super().__init__(message, "STRUCTURAL_ERROR", details)


class ChecksumMismatchError(SyncEngineError):
    """A backup (or live state) no longer matches its recorded checksum."""

    def __init__(self, message: str = "Checksum mismatch", details: Optional[dict[str, Any]] = None):
        super().__init__(message, "CHECKSUM_MISMATCH", details)


class CapacityError(SyncEngineError):
    """The local storage backend is out of space."""

    def __init__(self, message: str = "Storage capacity exceeded", details: Optional[dict[str, Any]] = None):
        super().__init__(message, "CAPACITY_EXCEEDED", details)


# =============================================================================
# Remote
# =============================================================================

class RemoteWriteError(SyncEngineError):
    """A push to the remote store was rejected or the remote is unreachable."""

    def __init__(self, message: str = "Remote write failed", details: Optional[dict[str, Any]] = None):
        super().__init__(message, "REMOTE_WRITE_ERROR", details)


class RemoteConflictError(RemoteWriteError):
    """A compare-and-set push lost against a newer remote version."""

    def __init__(self, message: str = "Remote version conflict", details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.error_code = "REMOTE_CONFLICT"


# =============================================================================
# Inbound command errors
# =============================================================================

class CommandError(SyncEngineError):
    """Base class for errors raised back to the issuer of an inbound command."""


class ProductNotFoundError(CommandError):
    def __init__(self, product_id: str):
        super().__init__(f"Product not found: {product_id}", "PRODUCT_NOT_FOUND", {"product_id": product_id})


class ProductUnavailableError(CommandError):
    def __init__(self, product_id: str, status: str, stock: int):
        super().__init__(
            f"Product {product_id} is not available",
            "PRODUCT_UNAVAILABLE",
            {"product_id": product_id, "status": status, "stock": stock},
        )


class CartItemNotFoundError(CommandError):
    def __init__(self, user_id: str, item_id: str):
        super().__init__(
            f"Item {item_id} not in cart of {user_id}",
            "CART_ITEM_NOT_FOUND",
            {"user_id": user_id, "item_id": item_id},
        )


class EmptyCartError(CommandError):
    def __init__(self, user_id: str):
        super().__init__(f"Cart is empty for {user_id}", "EMPTY_CART", {"user_id": user_id})


class InsufficientStockError(CommandError):
    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_id}",
            "INSUFFICIENT_STOCK",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class OrderNotFoundError(CommandError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", "ORDER_NOT_FOUND", {"order_id": order_id})


class InvalidTransitionError(CommandError):
    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(
            f"Order {order_id} cannot move from {current} to {requested}",
            "INVALID_TRANSITION",
            {"order_id": order_id, "current": current, "requested": requested},
        )


class CommandInProgressError(CommandError):
    def __init__(self, key: str):
        super().__init__(f"Command already in progress: {key}", "COMMAND_IN_PROGRESS", {"key": key})
