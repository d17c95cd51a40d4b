"""
Tests for the Remote Sync Adapter.

These tests verify that remote changes are applied once, that our own echoes
are recognized, and that work for the remote is parked while offline.
"""

import pytest

from shared.exceptions import RemoteWriteError
from shared.models import utcnow
from sync_engine.demo import settle_all
from sync_engine.events import EventTypes, SyncStatus
from sync_engine.remote import ChangeType, DocumentChange
from sync_engine.sync_adapter import PUSH


def product_change(doc_id: str, version: int, **data) -> DocumentChange:
    return DocumentChange(
        collection="products",
        change_type=ChangeType.MODIFIED,
        doc_id=doc_id,
        data={"id": doc_id, "name": "Classic Tee", "price": "100.00", "stock": 40, **data},
        version=version,
    )


class TestInitialSync:
    """Tests for startup against a reachable remote."""

    @pytest.mark.asyncio
    async def test_remote_catalog_loaded(self, engine):
        products = {p.id: p for p in engine.catalog.list_products()}

        assert set(products) == {"prod-001", "prod-002", "prod-003", "prod-004"}
        assert all(p.version == 1 for p in products.values())
        assert engine.adapter.status == SyncStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_connected_status_announced_once(self, engine):
        statuses = [e.payload["status"] for e in engine.bus.get_event_log(EventTypes.SYNC_STATUS)]
        assert statuses == ["connected"]

    @pytest.mark.asyncio
    async def test_unreachable_remote_starts_degraded(self, server, make_engine):
        server.set_online(False)
        engine = await make_engine("partner-tab")

        assert engine.adapter.status == SyncStatus.DEGRADED
        assert engine.catalog.list_products() == []
        assert [n.type for n in engine.notifications.inbox()] == ["sync_degraded"]


class TestIncomingChanges:
    """Tests for applying remote-originated changes."""

    @pytest.mark.asyncio
    async def test_change_from_other_client_applied(self, make_engine, admin):
        partner_tab = await make_engine("partner-tab")
        admin_tab = await make_engine("admin-tab", recipient=admin)

        admin_tab.update_product("prod-001", {"price": "95.00"})
        await settle_all(admin_tab, partner_tab)

        product = partner_tab.store.get_product("prod-001")
        assert str(product.price) == "95.00"
        assert product.version == 2
        updates = partner_tab.bus.get_event_log(EventTypes.PRODUCT_UPDATED)
        assert len(updates) == 1
        assert updates[0].remote is True

    @pytest.mark.asyncio
    async def test_own_echo_updates_version_silently(self, engine):
        """Test that the confirmed echo of our own write raises no second event."""
        engine.update_product("prod-002", {"stock": 30})
        await engine.settle()

        assert engine.store.get_product("prod-002").version == 2
        assert len(engine.bus.get_event_log(EventTypes.PRODUCT_UPDATED)) == 1

    @pytest.mark.asyncio
    async def test_stale_change_ignored(self, engine):
        engine.adapter._apply_product(product_change("prod-001", 1, stock=3))

        assert engine.store.get_product("prod-001").stock == 40

    @pytest.mark.asyncio
    async def test_same_change_applied_once(self, engine):
        """Test that re-delivery of one change is a no-op."""
        engine.bus.clear_event_log()
        change = product_change("prod-001", 5, stock=12)

        engine.adapter._apply_product(change)
        engine.adapter._apply_product(change)

        assert engine.store.get_product("prod-001").stock == 12
        assert len(engine.bus.get_event_log(EventTypes.PRODUCT_UPDATED)) == 1

    @pytest.mark.asyncio
    async def test_pending_echo_ignored(self, engine):
        change = product_change("prod-001", 9, stock=1)
        change.has_pending_writes = True

        engine.adapter._on_change(change)
        await engine.settle()

        assert engine.store.get_product("prod-001").stock == 40

    @pytest.mark.asyncio
    async def test_malformed_remote_product_skipped(self, engine):
        engine.adapter._apply_product(product_change("prod-001", 7, price="free"))
        assert str(engine.store.get_product("prod-001").price) == "100.00"

    @pytest.mark.asyncio
    async def test_remote_removal(self, make_engine, admin):
        partner_tab = await make_engine("partner-tab")
        admin_tab = await make_engine("admin-tab", recipient=admin)

        admin_tab.delete_product("prod-002")
        await settle_all(admin_tab, partner_tab)

        assert partner_tab.store.get_product("prod-002") is None

    @pytest.mark.asyncio
    async def test_order_bookkeeping_only_grows(self, engine):
        """Test that an incoming order never undoes applied inventory lines."""
        engine.add_to_cart("partner-1", "prod-001", 1)
        order = await engine.checkout("partner-1")
        await engine.settle()
        local = engine.store.get_order(order.id)
        assert local.inventory_applied is True

        stale_doc = {**local.model_dump(mode="json"), "applied_items": [], "inventory_applied": False}
        engine.adapter._apply_order(DocumentChange(
            collection="orders",
            change_type=ChangeType.MODIFIED,
            doc_id=order.id,
            data=stale_doc,
            version=local.version + 1,
        ))

        merged = engine.store.get_order(order.id)
        assert merged.applied_items == ["prod-001"]
        assert merged.inventory_applied is True

    @pytest.mark.asyncio
    async def test_order_from_other_client_added_once(self, make_engine, admin):
        partner_tab = await make_engine("partner-tab")
        admin_tab = await make_engine("admin-tab", recipient=admin)

        partner_tab.add_to_cart("partner-1", "prod-002", 2)
        order = await partner_tab.checkout("partner-1")
        await settle_all(partner_tab, admin_tab)

        assert admin_tab.store.get_order(order.id) is not None
        added = admin_tab.bus.get_event_log(EventTypes.ORDER_ADDED)
        assert len(added) == 1
        assert added[0].remote is True


class TestOfflineMode:
    """Tests for degraded mode and reconciliation."""

    @pytest.mark.asyncio
    async def test_pushes_parked_while_offline(self, engine, server):
        engine.remote.disconnect()
        engine.update_product("prod-001", {"name": "Renamed Tee"})

        assert engine.adapter.status == SyncStatus.DEGRADED
        assert [item.kind for item in engine.adapter.outbox] == [PUSH]
        assert server.document("products", "prod-001")["name"] == "Classic Tee"

    @pytest.mark.asyncio
    async def test_outbox_flushed_on_reconnect(self, engine, server):
        engine.remote.disconnect()
        engine.update_product("prod-001", {"name": "Renamed Tee"})

        engine.remote.reconnect()
        assert await engine.adapter.reconcile() is True
        await engine.settle()

        assert engine.adapter.outbox == []
        assert engine.adapter.status == SyncStatus.CONNECTED
        assert server.document("products", "prod-001")["name"] == "Renamed Tee"

    @pytest.mark.asyncio
    async def test_changes_missed_while_offline_are_pulled(self, make_engine, admin):
        partner_tab = await make_engine("partner-tab")
        admin_tab = await make_engine("admin-tab", recipient=admin)

        partner_tab.remote.disconnect()
        admin_tab.update_product("prod-002", {"price": "45.00"})
        admin_tab.delete_product("prod-004")
        await admin_tab.settle()

        partner_tab.remote.reconnect()
        await partner_tab.adapter.reconcile()
        await partner_tab.settle()

        assert str(partner_tab.store.get_product("prod-002").price) == "45.00"
        assert partner_tab.store.get_product("prod-004") is None

    @pytest.mark.asyncio
    async def test_status_events_on_transitions(self, engine):
        engine.remote.disconnect()
        engine.remote.reconnect()
        await engine.adapter.reconcile()

        statuses = [e.payload["status"] for e in engine.bus.get_event_log(EventTypes.SYNC_STATUS)]
        assert statuses == ["connected", "degraded", "connected"]

    @pytest.mark.asyncio
    async def test_push_raises_when_offline(self, engine):
        engine.remote.disconnect()
        with pytest.raises(RemoteWriteError):
            await engine.adapter.push("products", "prod-001", {"last_modified": utcnow().isoformat()})


class TestPermanentFailure:
    """Tests for side effects that exhaust their retries."""

    @pytest.fixture
    def rejecting_remote(self, engine, monkeypatch):
        async def reject(collection, doc_id, patch, expected_version=None):
            raise RemoteWriteError(f"Rejected {collection}/{doc_id}")

        monkeypatch.setattr(engine.remote, "push", reject)
        return monkeypatch

    @pytest.mark.asyncio
    async def test_dead_lettered_push_reports_error(self, engine, rejecting_remote):
        engine.update_product("prod-001", {"name": "Renamed Tee"})
        await engine.settle()

        assert len(engine.side_effects.dead_letters) == 1
        assert engine.adapter.status == SyncStatus.ERROR
        event = engine.bus.get_event_log(EventTypes.SYNC_STATUS)[-1]
        assert event.payload["status"] == "error"
        assert "push failed permanently" in event.payload["reason"]
        # Still talking to the remote: new work is pushed, not parked
        assert engine.adapter.online is True

    @pytest.mark.asyncio
    async def test_reconcile_clears_error(self, engine, rejecting_remote):
        engine.update_product("prod-001", {"name": "Renamed Tee"})
        await engine.settle()
        rejecting_remote.undo()

        assert await engine.adapter.reconcile() is True

        statuses = [e.payload["status"] for e in engine.bus.get_event_log(EventTypes.SYNC_STATUS)]
        assert statuses == ["connected", "error", "connected"]


class TestApplications:
    """Tests for partner applications."""

    @pytest.mark.asyncio
    async def test_application_notifies_admins(self, make_engine, admin, server):
        partner_tab = await make_engine("partner-tab")
        admin_tab = await make_engine("admin-tab", recipient=admin)

        application = partner_tab.submit_application("Corner Shop", "shop@example.com")
        await settle_all(partner_tab, admin_tab)

        assert server.document("applications", application.id)["business_name"] == "Corner Shop"
        ids = [n.id for n in admin_tab.notifications.inbox()]
        assert ids.count(f"new_application:{application.id}") == 1
        assert partner_tab.notifications.inbox() == []
