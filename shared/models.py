"""
Domain models for the wholesale portal sync engine.

These models describe the records that live inside the local snapshot and the
remote collections: products, carts, orders, notifications, applications and
backups.

Design decisions:
- Using Pydantic for validation and serialization
- Money is Decimal with two places, rounded half-up
- Cart totals are always derived from the items, never stored
- Order items are copies of the cart at checkout time, not live references
- Documents carry a server-assigned version used for echo detection
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.templates import NotificationType


CENT = Decimal("0.01")

# Audience marker for notifications addressed to every user
BROADCAST_AUDIENCE = "all"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    """Round a money amount to cents, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# Enums - Status values used across the domain
# =============================================================================

class ProductStatus(str, Enum):
    """Catalog availability of a product."""
    AVAILABLE = "AVAILABLE"
    COMING_SOON = "COMING_SOON"
    SOLD_OUT = "SOLD_OUT"


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "PENDING"           # Order placed, not yet picked up by the warehouse
    PROCESSING = "PROCESSING"     # Being prepared
    SHIPPED = "SHIPPED"           # Handed to the carrier
    DELIVERED = "DELIVERED"       # Terminal
    CANCELLED = "CANCELLED"       # Terminal


ORDER_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


class UserRole(str, Enum):
    """Role classes used for notification routing."""
    ADMIN = "admin"
    PARTNER = "partner"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# Catalog
# =============================================================================

class Product(BaseModel):
    """
    A product in the wholesale catalog.

    The status always agrees with the stock: a product with no stock is
    SOLD_OUT and a SOLD_OUT product that gets restocked becomes AVAILABLE.
    Because the rule is enforced by the validator, every mutation must go
    through `with_changes` (model_copy skips validation).
    """
    id: str = Field(..., description="Unique product identifier")
    name: str = Field(..., description="Product display name")
    price: Decimal = Field(..., ge=0, decimal_places=2, description="Unit price")
    stock: int = Field(default=0, ge=0, description="Units on hand")
    status: ProductStatus = Field(default=ProductStatus.AVAILABLE)
    last_modified: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0, description="Server-assigned document version")

    model_config = ConfigDict(use_enum_values=True)

    @model_validator(mode="after")
    def _status_follows_stock(self) -> "Product":
        if self.stock == 0:
            self.status = ProductStatus.SOLD_OUT.value
        elif self.status == ProductStatus.SOLD_OUT:
            self.status = ProductStatus.AVAILABLE.value
        return self

    @property
    def is_available(self) -> bool:
        return self.status == ProductStatus.AVAILABLE and self.stock > 0

    def with_changes(self, **changes: Any) -> "Product":
        """Return a validated copy with the given fields replaced."""
        return Product.model_validate({**self.model_dump(), **changes})

    def with_stock(self, stock: int) -> "Product":
        """Return a copy with the new stock, never below zero."""
        return self.with_changes(stock=max(0, stock), last_modified=utcnow())


# =============================================================================
# Cart
# =============================================================================

class CartItem(BaseModel):
    """A single line in a user's cart. The product id doubles as the item id."""
    product_id: str = Field(..., description="Reference to product")
    name: str = Field(..., description="Product name at add time")
    quantity: int = Field(..., ge=1, description="Quantity in cart")
    unit_price: Decimal = Field(..., ge=0, description="Price snapshot at add time")
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.product_id

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CartTotals(BaseModel):
    """Derived cart/order totals."""
    subtotal: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    item_count: int = 0


class PricingConfig(Protocol):
    free_shipping_threshold: Decimal
    flat_shipping: Decimal
    tax_rate: Decimal


def calculate_totals(lines: list[Any], pricing: PricingConfig) -> CartTotals:
    """
    Compute subtotal, shipping, tax and total for cart items or order lines.

    Shipping is free once the subtotal reaches the threshold; an empty cart
    has no shipping charge.
    """
    subtotal = sum((line.unit_price * line.quantity for line in lines), Decimal("0"))
    item_count = sum(line.quantity for line in lines)

    if not lines:
        shipping = Decimal("0")
    elif subtotal >= pricing.free_shipping_threshold:
        shipping = Decimal("0")
    else:
        shipping = Decimal(pricing.flat_shipping)

    tax = quantize_money(subtotal * Decimal(pricing.tax_rate))
    return CartTotals(
        subtotal=quantize_money(subtotal),
        shipping=quantize_money(shipping),
        tax=tax,
        total=quantize_money(subtotal + shipping + tax),
        item_count=item_count,
    )


class Cart(BaseModel):
    """A user's cart. Totals are computed on demand."""
    user_id: str
    items: list[CartItem] = Field(default_factory=list)

    def find(self, item_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == item_id:
                return item
        return None

    def totals(self, pricing: PricingConfig) -> CartTotals:
        return calculate_totals(self.items, pricing)


# =============================================================================
# Orders
# =============================================================================

class OrderLine(BaseModel):
    """Immutable copy of a cart item taken at checkout."""
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    """
    A placed order.

    Created at checkout and afterwards only mutated by status/tracking updates.
    `applied_items` records which lines have already been decremented from the
    remote inventory so that a retried decrement never applies twice.
    """
    id: str = Field(..., description="Unique order identifier")
    user_id: str = Field(..., description="Owning user")
    items: list[OrderLine] = Field(default_factory=list)
    totals: CartTotals = Field(default_factory=CartTotals)
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    tracking: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default=None)
    version: int = Field(default=0, ge=0)
    inventory_applied: bool = False
    applied_items: list[str] = Field(default_factory=list)

    model_config = ConfigDict(use_enum_values=True)

    def can_transition_to(self, new_status: str) -> bool:
        if new_status == self.status:
            return True
        return new_status in ORDER_TRANSITIONS.get(self.status, set())

    def with_changes(self, **changes: Any) -> "Order":
        return Order.model_validate({**self.model_dump(), **changes})


# =============================================================================
# Notifications
# =============================================================================

class Notification(BaseModel):
    """
    An in-app notification.

    audience is a user id, a role name ("admin", "partner") or "all".
    """
    id: str
    type: NotificationType
    audience: str = BROADCAST_AUDIENCE
    title: str
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(use_enum_values=True)


class Recipient(BaseModel):
    """The user a client session is acting for."""
    user_id: str
    role: UserRole = UserRole.PARTNER

    model_config = ConfigDict(use_enum_values=True)

    def matches_audience(self, audience: str) -> bool:
        return audience in (self.user_id, self.role, BROADCAST_AUDIENCE)


# =============================================================================
# Applications & backups
# =============================================================================

class Application(BaseModel):
    """A business partner application, kept in the remote store only."""
    id: str
    business_name: str
    contact_email: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    submitted_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)


class Backup(BaseModel):
    """A checksummed copy of the whole snapshot."""
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any]
    version: int = 1
    checksum: str
