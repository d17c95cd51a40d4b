"""
Notification message templates.

Every notification type has a short title and a one-line message with
{variable} placeholders filled in with Python's string formatting.

Design decisions:
- Templates are plain strings, no templating engine
- Some types are restricted to a role class (admins see inventory alerts and
  incoming orders, partners never do)
- Money values are passed pre-formatted with format_money
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class NotificationType(str, Enum):
    """
    Supported notification types.

    Each type corresponds to a domain event that produces a notification.
    """
    # Orders
    ORDER_PLACED = "order_placed"            # Confirmation to the owner
    NEW_ORDER = "new_order"                  # Heads-up to admins
    ORDER_STATUS_CHANGED = "order_status_changed"

    # Inventory
    INVENTORY_LOW = "inventory_low"
    OUT_OF_STOCK = "out_of_stock"

    # Partners
    NEW_APPLICATION = "new_application"

    # System
    DATA_RECOVERED = "data_recovered"
    DATA_RESET = "data_reset"
    SYNC_DEGRADED = "sync_degraded"


# Types only ever shown to one role class
ROLE_RESTRICTED_TYPES: dict[str, str] = {
    NotificationType.NEW_ORDER.value: "admin",
    NotificationType.INVENTORY_LOW.value: "admin",
    NotificationType.OUT_OF_STOCK.value: "admin",
    NotificationType.NEW_APPLICATION.value: "admin",
}


def restricted_role(notification_type: str) -> Optional[str]:
    """Role class a notification type is limited to, or None if unrestricted."""
    return ROLE_RESTRICTED_TYPES.get(notification_type)


@dataclass
class NotificationTemplate:
    """A notification title/message pair."""
    notification_type: NotificationType
    title: str
    message: str

    def render(self, **kwargs) -> tuple[str, str]:
        """
        Render the template with provided variables.

        Returns:
            Tuple of (title, message)
        """
        return (
            self.title.format(**kwargs),
            self.message.format(**kwargs),
        )


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[NotificationType, NotificationTemplate] = {

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    NotificationType.ORDER_PLACED: NotificationTemplate(
        notification_type=NotificationType.ORDER_PLACED,
        title="Order Confirmed",
        message="Your order {order_id} was placed. Total: {total} for {item_count} units.",
    ),

    NotificationType.NEW_ORDER: NotificationTemplate(
        notification_type=NotificationType.NEW_ORDER,
        title="New Order",
        message="New order {order_id} from {user_id} ({total}).",
    ),

    NotificationType.ORDER_STATUS_CHANGED: NotificationTemplate(
        notification_type=NotificationType.ORDER_STATUS_CHANGED,
        title="Order Update",
        message="Order {order_id} is now {status}.{tracking_note}",
    ),

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    NotificationType.INVENTORY_LOW: NotificationTemplate(
        notification_type=NotificationType.INVENTORY_LOW,
        title="Low Stock Alert",
        message="{product_name} is running low ({stock} remaining).",
    ),

    NotificationType.OUT_OF_STOCK: NotificationTemplate(
        notification_type=NotificationType.OUT_OF_STOCK,
        title="Out of Stock",
        message="{product_name} is sold out.",
    ),

    # -------------------------------------------------------------------------
    # Partners
    # -------------------------------------------------------------------------

    NotificationType.NEW_APPLICATION: NotificationTemplate(
        notification_type=NotificationType.NEW_APPLICATION,
        title="New Partner Application",
        message="{business_name} applied for a wholesale account ({contact_email}).",
    ),

    # -------------------------------------------------------------------------
    # System
    # -------------------------------------------------------------------------

    NotificationType.DATA_RECOVERED: NotificationTemplate(
        notification_type=NotificationType.DATA_RECOVERED,
        title="Data Recovered",
        message="Local data was restored from the backup taken at {backup_timestamp}.",
    ),

    NotificationType.DATA_RESET: NotificationTemplate(
        notification_type=NotificationType.DATA_RESET,
        title="Data Reset",
        message="Local data was corrupted and no valid backup was found. "
                "Data was reset and may not be synchronized.",
    ),

    NotificationType.SYNC_DEGRADED: NotificationTemplate(
        notification_type=NotificationType.SYNC_DEGRADED,
        title="Working Offline",
        message="Connection to the server was lost. Changes are saved locally "
                "and will sync when the connection returns.",
    ),
}


def render_notification(notification_type: NotificationType, **kwargs) -> tuple[str, str]:
    """
    Render a notification for the given type.

    Raises:
        ValueError: If notification_type has no template
        KeyError: If a required template variable is missing
    """
    template = TEMPLATES.get(NotificationType(notification_type))
    if template is None:
        raise ValueError(f"No template for notification type: {notification_type}")
    return template.render(**kwargs)


def format_money(amount: Decimal) -> str:
    """Format a money amount for display in a message."""
    return f"${Decimal(amount):,.2f}"
