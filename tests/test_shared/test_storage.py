"""
Tests for SharedStorage.
"""

import pytest

from shared.exceptions import CapacityError
from shared.storage import SharedStorage


class TestSharedStorage:
    """Tests for key/value operations and capacity."""

    def test_set_and_get(self):
        storage = SharedStorage()
        storage.set_item("key", "value")

        assert storage.get_item("key") == "value"
        assert storage.keys() == ["key"]

    def test_missing_key_is_none(self):
        assert SharedStorage().get_item("nope") is None

    def test_remove_item(self):
        storage = SharedStorage()
        storage.set_item("key", "value")
        storage.remove_item("key")

        assert storage.get_item("key") is None

    def test_capacity_error_keeps_previous_value(self):
        """Test that a write over capacity fails and leaves the old value."""
        storage = SharedStorage(capacity_bytes=10)
        storage.set_item("key", "12345")

        with pytest.raises(CapacityError):
            storage.set_item("key", "x" * 11)

        assert storage.get_item("key") == "12345"

    def test_capacity_counts_replaced_value_once(self):
        """Test that overwriting a key does not count the old value."""
        storage = SharedStorage(capacity_bytes=10)
        storage.set_item("key", "x" * 10)
        storage.set_item("key", "y" * 10)

        assert storage.used_bytes() == 10


class TestWatchers:
    """Tests for change observation."""

    def test_watcher_told_which_key_changed(self):
        storage = SharedStorage()
        changed = []
        storage.watch(changed.append)

        storage.set_item("a", "1")
        storage.remove_item("a")

        assert changed == ["a", "a"]

    def test_unwatch(self):
        storage = SharedStorage()
        changed = []
        unwatch = storage.watch(changed.append)
        unwatch()
        unwatch()  # harmless

        storage.set_item("a", "1")
        assert changed == []

    def test_failing_watcher_does_not_block_others(self):
        storage = SharedStorage()
        changed = []

        def broken(key):
            raise RuntimeError("boom")

        storage.watch(broken)
        storage.watch(changed.append)
        storage.set_item("a", "1")

        assert changed == ["a"]


class TestPersistence:
    """Tests for the write-through directory."""

    def test_values_survive_restart(self, tmp_path):
        storage = SharedStorage(persist_dir=tmp_path)
        storage.set_item("snapshot", '{"products": []}')

        reopened = SharedStorage(persist_dir=tmp_path)
        assert reopened.get_item("snapshot") == '{"products": []}'

    def test_removed_values_are_deleted(self, tmp_path):
        storage = SharedStorage(persist_dir=tmp_path)
        storage.set_item("snapshot", "{}")
        storage.remove_item("snapshot")

        assert not (tmp_path / "snapshot.json").exists()
        assert SharedStorage(persist_dir=tmp_path).get_item("snapshot") is None
