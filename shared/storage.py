"""
Same-origin key/value storage shared by every client on one device.

SharedStorage stands in for the browser's origin storage: string values per
key, a byte capacity, and change watchers that let one client observe writes
made by another. Values can optionally be written through to a directory of
JSON files so a client restart sees the same data.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from shared.exceptions import CapacityError

logger = logging.getLogger("storage")

# Called with the key that changed
StorageWatcher = Callable[[str], None]


class SharedStorage:
    """
    In-process key/value storage with a capacity limit.

    Several clients (tabs) share one instance. Writers call set_item; every
    registered watcher is told which key changed and reads the value itself.
    """

    def __init__(self, capacity_bytes: Optional[int] = None, persist_dir: Optional[Path] = None):
        self.capacity_bytes = capacity_bytes
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self._items: dict[str, str] = {}
        self._watchers: list[StorageWatcher] = []

        if self.persist_dir is not None:
            self.persist_dir.mkdir(parents=True, exist_ok=True)
            self._load_persisted()

    def _load_persisted(self) -> None:
        for filepath in self.persist_dir.glob("*.json"):
            with open(filepath, "r", encoding="utf-8") as f:
                self._items[filepath.stem] = f.read()
        logger.info(f"Loaded {len(self._items)} keys from {self.persist_dir}")

    def _persist(self, key: str) -> None:
        if self.persist_dir is None:
            return
        filepath = self.persist_dir / f"{key}.json"
        if key in self._items:
            with open(filepath, "w", encoding="utf-8") as f:
                f.write(self._items[key])
        elif filepath.exists():
            filepath.unlink()

    # =========================================================================
    # Key/value operations
    # =========================================================================

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        """
        Store a value and notify watchers.

        Raises:
            CapacityError: If the write would exceed the capacity. The previous
                value is kept.
        """
        if self.capacity_bytes is not None:
            other = sum(len(v.encode("utf-8")) for k, v in self._items.items() if k != key)
            needed = other + len(value.encode("utf-8"))
            if needed > self.capacity_bytes:
                raise CapacityError(
                    f"Writing '{key}' would exceed storage capacity",
                    {"key": key, "needed": needed, "capacity": self.capacity_bytes},
                )

        self._items[key] = value
        self._persist(key)
        self._notify(key)

    def remove_item(self, key: str) -> None:
        if key in self._items:
            del self._items[key]
            self._persist(key)
            self._notify(key)

    def keys(self) -> list[str]:
        return list(self._items)

    def used_bytes(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self._items.values())

    # =========================================================================
    # Change observation
    # =========================================================================

    def watch(self, watcher: StorageWatcher) -> Callable[[], None]:
        """Register a change watcher. Returns a function that removes it."""
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch

    def _notify(self, key: str) -> None:
        for watcher in list(self._watchers):
            try:
                watcher(key)
            except Exception as e:
                logger.error(f"Storage watcher failed for key '{key}': {e}")
