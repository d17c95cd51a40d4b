"""
Tests for the notification dispatcher.

These tests verify which events create notifications, who gets to see them,
and that duplicates collapse into one.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from shared.models import Notification, Order, OrderLine, Recipient, calculate_totals, utcnow
from shared.state_store import upsert_record
from sync_engine.events import EventTypes, SyncStatus, order_payload, sync_status_payload
from sync_engine.notification_dispatcher import NotificationDispatcher


@pytest.fixture
async def make_dispatcher(store, bus, settings):
    dispatchers = []

    def factory(recipient: Recipient) -> NotificationDispatcher:
        dispatcher = NotificationDispatcher(store, bus, settings, recipient)
        dispatcher.start()
        dispatchers.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in dispatchers:
        dispatcher.stop()
    await asyncio.sleep(0)


@pytest.fixture
def order(settings) -> Order:
    lines = [OrderLine(product_id="prod-001", name="Classic Tee", quantity=2, unit_price=Decimal("100.00"))]
    return Order(id="ord-1", user_id="partner-1", items=lines, totals=calculate_totals(lines, settings))


def place(store, order: Order, remote: bool = False) -> None:
    doc = order.model_dump(mode="json")
    store.write(lambda draft: upsert_record(draft["orders"], doc), EventTypes.ORDER_ADDED, order_payload(order), remote=remote)


def make_notification(notification_id: str, audience: str = "all", **changes) -> Notification:
    return Notification(
        id=notification_id, type="order_placed", audience=audience, title="t", message="m", **changes
    )


async def drain():
    for _ in range(10):
        await asyncio.sleep(0)


class TestOrderNotifications:
    """Tests for order-driven notifications."""

    @pytest.mark.asyncio
    async def test_local_order_notifies_owner_and_admins(self, make_dispatcher, store, partner, order):
        dispatcher = make_dispatcher(partner)
        place(store, order)

        stored = {n.id: n for n in store.get_notifications()}
        assert set(stored) == {"order_placed:ord-1", "new_order:ord-1"}
        assert stored["order_placed:ord-1"].audience == "partner-1"
        assert stored["new_order:ord-1"].audience == "admin"
        assert "$242.50" in stored["order_placed:ord-1"].message

        assert [n.id for n in dispatcher.inbox()] == ["order_placed:ord-1"]

    @pytest.mark.asyncio
    async def test_admin_inbox_shows_new_order_only(self, make_dispatcher, store, admin, order):
        dispatcher = make_dispatcher(admin)
        place(store, order)

        assert [n.type for n in dispatcher.inbox()] == ["new_order"]

    @pytest.mark.asyncio
    async def test_remote_order_creates_nothing(self, make_dispatcher, store, partner, order):
        """Test that changes made by other clients do not create notifications here."""
        make_dispatcher(partner)
        place(store, order, remote=True)

        assert store.get_notifications() == []

    @pytest.mark.asyncio
    async def test_status_change_notifies_owner(self, make_dispatcher, store, partner, order):
        dispatcher = make_dispatcher(partner)
        shipped = order.with_changes(status="SHIPPED", tracking="1Z999")
        store.write(lambda draft: None, EventTypes.ORDER_UPDATED, order_payload(shipped, previous_status="PROCESSING"))

        notification = dispatcher.inbox()[0]
        assert notification.id == "order_status:ord-1:SHIPPED"
        assert "1Z999" in notification.message

    @pytest.mark.asyncio
    async def test_update_without_status_change_is_quiet(self, make_dispatcher, store, partner, order):
        make_dispatcher(partner)
        store.write(lambda draft: None, EventTypes.ORDER_UPDATED, order_payload(order))

        assert store.get_notifications() == []


class TestDeduplication:
    """Tests for deterministic ids and duplicate suppression."""

    @pytest.mark.asyncio
    async def test_same_id_is_stored_once(self, make_dispatcher, store, partner):
        dispatcher = make_dispatcher(partner)

        assert dispatcher.publish(make_notification("n-1")) is True
        assert dispatcher.publish(make_notification("n-1")) is False
        assert len(store.get_notifications()) == 1

    @pytest.mark.asyncio
    async def test_repeated_order_event_collapses(self, make_dispatcher, store, partner, order):
        make_dispatcher(partner)
        place(store, order)
        place(store, order)

        assert len(store.get_notifications()) == 2

    @pytest.mark.asyncio
    async def test_presented_once(self, make_dispatcher, bus, partner):
        dispatcher = make_dispatcher(partner)
        doc = make_notification("n-1").model_dump(mode="json")

        bus.emit(EventTypes.NOTIFICATION, {"notification": doc}, source="tab-2", remote=True)
        bus.emit(EventTypes.NOTIFICATION, {"notification": doc}, source="tab-3", remote=True)
        await drain()

        assert [n.id for n in dispatcher.presented] == ["n-1"]


class TestFiltering:
    """Tests for audience, role and recency filters."""

    @pytest.mark.asyncio
    async def test_role_restricted_types_hidden_from_partners(self, make_dispatcher, bus, store, partner, settings):
        dispatcher = make_dispatcher(partner)
        bus.emit(
            EventTypes.INVENTORY_LOW,
            {"product_id": "prod-004", "product_name": "Canvas Tote", "stock": 9, "threshold": 10, "version": 3},
            source="tab-1",
        )
        await drain()

        assert [n.id for n in store.get_notifications()] == ["inventory_low:prod-004:3"]
        assert dispatcher.inbox() == []
        assert dispatcher.presented == []

    @pytest.mark.asyncio
    async def test_admin_sees_inventory_alerts(self, make_dispatcher, bus, admin):
        dispatcher = make_dispatcher(admin)
        bus.emit(EventTypes.OUT_OF_STOCK, {"product_id": "prod-003", "product_name": "Hoodie", "stock": 0, "threshold": 10, "version": 2}, source="tab-1")
        await drain()

        assert [n.id for n in dispatcher.presented] == ["out_of_stock:prod-003:2"]

    @pytest.mark.asyncio
    async def test_other_users_notifications_hidden(self, make_dispatcher, partner):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("n-1", audience="partner-2"))
        await drain()

        assert dispatcher.inbox() == []
        assert dispatcher.presented == []

    @pytest.mark.asyncio
    async def test_old_notifications_stored_but_not_presented(self, make_dispatcher, partner):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("old", created_at=utcnow() - timedelta(days=2)))
        await drain()

        assert [n.id for n in dispatcher.inbox()] == ["old"]
        assert dispatcher.presented == []

    @pytest.mark.asyncio
    async def test_subscribe_switches_recipient(self, make_dispatcher, partner, admin):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("for-admin", audience="admin"))

        assert dispatcher.inbox() == []
        assert [n.id for n in dispatcher.subscribe(admin)] == ["for-admin"]


class TestPresentation:
    """Tests for sequential presentation."""

    @pytest.mark.asyncio
    async def test_presented_in_arrival_order(self, make_dispatcher, partner):
        dispatcher = make_dispatcher(partner)
        shown = []
        dispatcher.on_present(lambda n: shown.append(n.id))

        for i in range(3):
            dispatcher.publish(make_notification(f"n-{i}"))
        await drain()

        assert shown == ["n-0", "n-1", "n-2"]

    @pytest.mark.asyncio
    async def test_one_visible_at_a_time(self, store, bus, settings, partner):
        dispatcher = NotificationDispatcher(store, bus, settings.model_copy(update={"toast_duration": 10}), partner)
        dispatcher.start()
        try:
            dispatcher.publish(make_notification("n-1"))
            dispatcher.publish(make_notification("n-2"))
            await drain()

            assert dispatcher.visible.id == "n-1"
            assert [n.id for n in dispatcher.presented] == ["n-1"]
        finally:
            dispatcher.stop()
            await asyncio.sleep(0)


class TestReadState:
    """Tests for read flags and pruning."""

    @pytest.mark.asyncio
    async def test_mark_read(self, make_dispatcher, partner):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("n-1"))
        dispatcher.publish(make_notification("n-2"))

        assert dispatcher.unread_count() == 2
        assert dispatcher.mark_read(["n-1", "missing"]) == 1
        assert dispatcher.mark_read(["n-1"]) == 0
        assert dispatcher.unread_count() == 1

    @pytest.mark.asyncio
    async def test_mark_all_read(self, make_dispatcher, partner):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("n-1"))
        dispatcher.publish(make_notification("n-2"))

        assert dispatcher.mark_all_read() == 2
        assert dispatcher.unread_count() == 0

    @pytest.mark.asyncio
    async def test_prune(self, make_dispatcher, partner, store):
        dispatcher = make_dispatcher(partner)
        dispatcher.publish(make_notification("old", created_at=utcnow() - timedelta(days=8)))
        dispatcher.publish(make_notification("new"))

        assert dispatcher.prune() == 1
        assert [n.id for n in store.get_notifications()] == ["new"]


class TestSystemNotifications:
    """Tests for local-only system notices."""

    @pytest.mark.asyncio
    async def test_degraded_sync(self, make_dispatcher, bus, partner):
        dispatcher = make_dispatcher(partner)
        bus.emit(EventTypes.SYNC_STATUS, sync_status_payload(SyncStatus.DEGRADED, "connection lost"), source="tab-1")
        bus.emit(EventTypes.SYNC_STATUS, sync_status_payload(SyncStatus.CONNECTED), source="tab-1")

        assert [n.type for n in dispatcher.inbox()] == ["sync_degraded"]

    @pytest.mark.asyncio
    async def test_data_reset(self, make_dispatcher, store, partner):
        dispatcher = make_dispatcher(partner)
        store.reset_to_default()

        assert [n.type for n in dispatcher.inbox()] == ["data_reset"]

    @pytest.mark.asyncio
    async def test_data_recovered(self, make_dispatcher, store, settings, partner):
        dispatcher = make_dispatcher(partner)
        store.replace(
            store.read(),
            payload={"reason": "recovery", "backup_timestamp": "2026-01-01T00:00:00+00:00"},
        )

        notification = dispatcher.inbox()[0]
        assert notification.type == "data_recovered"
        assert "2026-01-01" in notification.message

    @pytest.mark.asyncio
    async def test_application_submitted(self, make_dispatcher, bus, admin):
        dispatcher = make_dispatcher(admin)
        application = {"id": "app-1", "business_name": "Corner Shop", "contact_email": "shop@example.com"}
        bus.emit(EventTypes.APPLICATION_SUBMITTED, {"application": application}, source="tab-1", remote=True)

        assert [n.id for n in dispatcher.inbox()] == ["new_application:app-1"]
