"""
HTTP API for the wholesale sync engine.

A single FastAPI application wrapping one engine client: catalog, carts and
checkout, order status, notifications, and backup & recovery.
"""

from api.main import app

__all__ = ["app"]
