"""
Cross-client synchronization and recovery engine.

This package keeps products, carts and orders consistent across clients:
- Local changes go through the Local State Store and its event bus
- Other tabs on the device hear about them through the broadcast channel
- The sync adapter pushes them upstream and applies confirmed remote changes
  through the processing queues
- The backup manager snapshots the state and restores it after corruption
- The notification dispatcher tells the right people what happened
"""

from sync_engine.engine import SyncEngine
from sync_engine.event_bus import Event, EventBus
from sync_engine.events import EventTypes, SyncStatus
from sync_engine.remote import InMemoryRemoteStore, RemoteConnection, RemoteFeed

__all__ = [
    "Event",
    "EventBus",
    "EventTypes",
    "InMemoryRemoteStore",
    "RemoteConnection",
    "RemoteFeed",
    "SyncEngine",
    "SyncStatus",
]
