"""
Tests for the storage-backed broadcast channel between tabs.
"""

import asyncio

import pytest

from shared.storage import SharedStorage
from sync_engine.broadcast import StorageBroadcastChannel


@pytest.fixture
def channels(storage: SharedStorage):
    """Two tabs on the same device."""
    tab_a = StorageBroadcastChannel(storage, "tab-a")
    tab_b = StorageBroadcastChannel(storage, "tab-b")
    yield tab_a, tab_b
    tab_a.close()
    tab_b.close()


class TestStorageBroadcastChannel:
    """Tests for publish/subscribe between tabs."""

    @pytest.mark.asyncio
    async def test_other_tab_receives_message(self, channels):
        tab_a, tab_b = channels
        received = []
        tab_b.subscribe("cart_updated", received.append)

        assert tab_a.publish("cart_updated", {"user_id": "partner-1"})
        assert received == []  # delivery is deferred
        await asyncio.sleep(0)

        assert len(received) == 1
        assert received[0].payload == {"user_id": "partner-1"}
        assert received[0].client_id == "tab-a"

    @pytest.mark.asyncio
    async def test_own_messages_are_not_delivered(self, channels):
        tab_a, _ = channels
        received = []
        tab_a.subscribe("*", received.append)

        tab_a.publish("cart_updated", {})
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_rapid_writes_coalesce_to_latest(self, channels):
        """Test that a second write before delivery replaces the first."""
        tab_a, tab_b = channels
        received = []
        tab_b.subscribe("*", received.append)

        tab_a.publish("product_updated", {"stock": 9})
        tab_a.publish("product_updated", {"stock": 8})
        await asyncio.sleep(0)

        assert [m.payload["stock"] for m in received] == [8]

    @pytest.mark.asyncio
    async def test_duplicate_envelope_is_ignored(self, channels, storage):
        tab_a, tab_b = channels
        received = []
        tab_b.subscribe("*", received.append)

        tab_a.publish("order_added", {})
        await asyncio.sleep(0)
        storage.set_item(tab_a.key, storage.get_item(tab_a.key))
        await asyncio.sleep(0)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_malformed_envelope_is_ignored(self, channels, storage):
        _, tab_b = channels
        received = []
        tab_b.subscribe("*", received.append)

        storage.set_item(tab_b.key, "not json")
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self, channels):
        tab_a, tab_b = channels
        received = []
        tab_b.subscribe("*", received.append)
        tab_b.close()

        tab_a.publish("order_added", {})
        await asyncio.sleep(0)

        assert received == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self, channels):
        tab_a, tab_b = channels
        received = []
        unsubscribe = tab_b.subscribe("order_added", received.append)
        unsubscribe()

        tab_a.publish("order_added", {})
        await asyncio.sleep(0)

        assert received == []

    def test_delivers_immediately_without_event_loop(self, channels):
        tab_a, tab_b = channels
        received = []
        tab_b.subscribe("*", received.append)

        tab_a.publish("order_added", {})
        assert len(received) == 1

    def test_publish_fails_softly_when_storage_full(self):
        storage = SharedStorage(capacity_bytes=10)
        channel = StorageBroadcastChannel(storage, "tab-a")

        assert channel.publish("order_added", {"big": "x" * 100}) is False
