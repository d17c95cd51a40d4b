"""
Tests for the Local State Store.

These tests verify that every write is validated, versioned and announced,
and that a damaged snapshot is reported instead of silently repaired.
"""

import json

import pytest

from shared.exceptions import CapacityError, StructuralError
from shared.state_store import (
    LocalStateStore,
    default_snapshot,
    dump_snapshot,
    upsert_record,
    validate_structure,
)
from shared.storage import SharedStorage


class TestValidateStructure:
    """Tests for the structural invariants."""

    def test_default_snapshot_is_valid(self, settings):
        validate_structure(default_snapshot(settings))

    @pytest.mark.parametrize("field", ["products", "orders", "config"])
    def test_missing_required_field(self, settings, field):
        doc = default_snapshot(settings)
        del doc[field]
        with pytest.raises(StructuralError):
            validate_structure(doc)

    def test_wrong_collection_type(self, settings):
        doc = {**default_snapshot(settings), "products": "oops"}
        with pytest.raises(StructuralError):
            validate_structure(doc)

    def test_non_object_element(self, settings):
        doc = {**default_snapshot(settings), "orders": [1, 2]}
        with pytest.raises(StructuralError):
            validate_structure(doc)

    def test_optional_fields_may_be_absent(self, settings):
        doc = default_snapshot(settings)
        del doc["carts"]
        del doc["notifications"]
        validate_structure(doc)

    def test_not_an_object(self):
        with pytest.raises(StructuralError):
            validate_structure([])


class TestReadWrite:
    """Tests for LocalStateStore reads and writes."""

    def test_absent_snapshot_reads_as_default(self, store):
        snapshot = store.read()
        assert snapshot["products"] == []
        assert snapshot["version"] == 0

    def test_ensure_initialized_writes_once(self, store):
        assert store.ensure_initialized() is True
        assert store.ensure_initialized() is False

    def test_write_bumps_version_and_stamps_last_sync(self, store):
        first = store.write(lambda draft: draft["products"].append({"id": "p1"}))
        second = store.write(lambda draft: None)

        assert first["version"] == 1
        assert second["version"] == 2
        assert second["last_sync"] is not None

    def test_write_publishes_one_event(self, store, bus):
        store.write(lambda draft: None, "product_added", {"product_id": "p1"})

        events = bus.get_event_log("product_added")
        assert len(events) == 1
        assert events[0].source == "tab-1"
        assert events[0].remote is False

    def test_silent_write_publishes_nothing(self, store, bus):
        store.write(lambda draft: None)
        assert bus.get_event_log() == []

    def test_mutator_may_return_new_snapshot(self, store, settings):
        replacement = {**default_snapshot(settings), "products": [{"id": "p9"}]}
        store.write(lambda draft: replacement)
        assert store.read()["products"] == [{"id": "p9"}]

    def test_invalid_result_keeps_previous_snapshot(self, store, bus):
        """Test that a write producing a malformed snapshot is rejected."""
        store.write(lambda draft: draft["products"].append({"id": "p1"}))
        before = store.read_raw()

        def break_it(draft):
            draft["products"] = "oops"

        with pytest.raises(StructuralError):
            store.write(break_it, "product_updated")

        assert store.read_raw() == before
        assert bus.get_event_log("product_updated") == []

    def test_read_returns_private_copy(self, store):
        store.write(lambda draft: draft["products"].append({"id": "p1"}))
        snapshot = store.read()
        snapshot["products"].clear()

        assert len(store.read()["products"]) == 1

    def test_capacity_error_keeps_previous_snapshot(self, bus, settings):
        storage = SharedStorage(capacity_bytes=400)
        store = LocalStateStore(storage, bus, settings, "tab-1")
        store.ensure_initialized()
        before = store.read_raw()

        with pytest.raises(CapacityError):
            store.write(lambda draft: draft["products"].append({"id": "p1", "name": "x" * 500}))

        assert store.read_raw() == before

    def test_unparseable_snapshot_raises(self, store, storage):
        storage.set_item(store.key, '{"products": [')
        with pytest.raises(StructuralError):
            store.read()

    def test_write_refuses_corrupt_snapshot(self, store, storage):
        storage.set_item(store.key, json.dumps({"products": []}))
        with pytest.raises(StructuralError):
            store.write(lambda draft: None)

    def test_merge(self, store):
        store.merge({"config": {"low_stock_threshold": 3}})
        assert store.read()["config"] == {"low_stock_threshold": 3}


class TestReplace:
    """Tests for whole-snapshot replacement."""

    def test_replace_ignores_corrupt_current_value(self, store, storage, settings, bus):
        storage.set_item(store.key, "garbage")
        snapshot = {**default_snapshot(settings), "products": [{"id": "p1"}], "version": 7}

        result = store.replace(snapshot, payload={"reason": "recovery"})

        assert result["version"] == 8
        assert store.read()["products"] == [{"id": "p1"}]
        assert bus.get_event_log("snapshot_replaced")[0].payload == {"reason": "recovery"}

    def test_replace_rejects_malformed_snapshot(self, store):
        with pytest.raises(StructuralError):
            store.replace({"products": []})

    def test_reset_to_default(self, seeded_store, bus):
        seeded_store.reset_to_default()

        assert seeded_store.read()["products"] == []
        assert len(bus.get_event_log("data_reset")) == 1


class TestTypedReaders:
    """Tests for model-typed access."""

    def test_get_products(self, seeded_store):
        products = seeded_store.get_products()
        assert [p.id for p in products] == ["prod-001", "prod-002", "prod-003", "prod-004"]
        assert seeded_store.get_product("prod-003").stock == 5
        assert seeded_store.get_product("missing") is None

    def test_malformed_record_is_skipped(self, seeded_store):
        """Test that one bad record does not hide the rest of the catalog."""
        seeded_store.write(lambda draft: draft["products"].append({"id": "bad", "price": "free"}))

        ids = [p.id for p in seeded_store.get_products()]
        assert "bad" not in ids
        assert len(ids) == 4

    def test_get_orders_filters_by_user(self, store):
        def add_orders(draft):
            upsert_record(draft["orders"], {"id": "o1", "user_id": "a"})
            upsert_record(draft["orders"], {"id": "o2", "user_id": "b"})

        store.write(add_orders)

        assert [o.id for o in store.get_orders("a")] == ["o1"]
        assert store.get_order("o2").user_id == "b"

    def test_cart_readers(self, store):
        item = {"product_id": "p1", "name": "P", "quantity": 2, "unit_price": "1.00"}
        store.write(lambda draft: draft["carts"].update({"partner-1": [item]}))

        assert store.get_cart_users() == ["partner-1"]
        assert store.get_cart_items("partner-1")[0].quantity == 2
        assert store.get_cart_items("nobody") == []


class TestDumpSnapshot:

    def test_dump_is_json(self, settings):
        assert json.loads(dump_snapshot(default_snapshot(settings)))["version"] == 0
