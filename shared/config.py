"""
Runtime configuration for the sync engine.

Values are read from the environment (prefix WHOLESALE_) or a local .env file.
The pricing values below are the canonical set; the cart, checkout and
snapshot config all read them from here.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Settings for one client of the sync engine."""

    model_config = SettingsConfigDict(env_prefix="WHOLESALE_", env_file=".env", extra="ignore")

    # Pricing
    free_shipping_threshold: Decimal = Decimal("1000")
    flat_shipping: Decimal = Decimal("25")
    tax_rate: Decimal = Decimal("0.0875")
    max_quantity_per_item: int = 10

    # Inventory
    low_stock_threshold: int = 10

    # Processing queue
    queue_max_retries: int = 3
    queue_retry_delay: float = 2.0  # seconds, multiplied by the attempt number

    # Backup & recovery
    backup_interval: float = 300.0
    integrity_check_interval: float = 300.0
    startup_grace_delay: float = 2.0
    backup_retention: int = 5
    backup_schema_version: int = 1

    # Remote readiness
    remote_ready_attempts: int = 30
    remote_ready_interval: float = 1.0

    # Notifications
    toast_duration: float = 5.0
    notification_recency_hours: float = 24.0
    notification_retention_days: float = 7.0

    # Local storage
    storage_capacity_bytes: int = 5 * 1024 * 1024
    storage_dir: str = ""
    snapshot_key: str = "wholesale_snapshot"
    backup_key: str = "wholesale_backups"
    channel_key: str = "wholesale_sync_channel"

    log_level: str = "INFO"

    def business_config(self) -> dict[str, Any]:
        """The config object stored inside every snapshot."""
        return {
            "free_shipping_threshold": str(self.free_shipping_threshold),
            "flat_shipping": str(self.flat_shipping),
            "tax_rate": str(self.tax_rate),
            "max_quantity_per_item": self.max_quantity_per_item,
            "low_stock_threshold": self.low_stock_threshold,
        }


@lru_cache
def get_settings() -> SyncSettings:
    return SyncSettings()
