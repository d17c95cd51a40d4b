"""
Backup & Recovery Manager.

Keeps a bounded ring of checksummed snapshot copies in shared storage, checks
the live snapshot on a schedule (and once shortly after startup) and restores
the newest intact backup when the live snapshot is damaged.

Design decisions:
- Checksum is SHA-256 over canonical JSON (sorted keys, no whitespace). It
  detects corruption; it is not a security feature.
- Backups are kept oldest-first, pruned to the retention count on every save
- When storage is full, all older backups are dropped and only the newest is
  saved
- Recovery walks backups newest to oldest, skipping (and logging) any whose
  checksum or structure is bad. The first good one replaces the live
  snapshot and its products are pushed back to the remote store.
- With no good backup the snapshot is reset to defaults; the reset event
  lets the notification layer tell the user their data may be out of sync
- Concurrent recovery requests share one run
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from shared.config import SyncSettings
from shared.exceptions import CapacityError, ChecksumMismatchError, StructuralError
from shared.models import Backup, utcnow
from shared.state_store import LocalStateStore, Snapshot, validate_structure
from shared.storage import SharedStorage

logger = logging.getLogger("backup")


def compute_checksum(data: Any) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BackupManager:
    """Snapshots, verifies and restores one client's local state."""

    def __init__(
        self,
        store: LocalStateStore,
        storage: SharedStorage,
        settings: SyncSettings,
        adapter=None,
        key: Optional[str] = None,
    ):
        self.store = store
        self.storage = storage
        self.settings = settings
        self.adapter = adapter
        self.key = key or settings.backup_key

        self.is_recovering = False
        self.auto_backup_enabled = False
        self.last_backup: Optional[str] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._timers: list[asyncio.Task] = []

    # =========================================================================
    # Backups
    # =========================================================================

    def snapshot(self) -> Backup:
        """
        Take a backup of the current snapshot and save it.

        Raises:
            StructuralError: If the live snapshot is damaged (never back up garbage)
            CapacityError: If even a single backup does not fit
        """
        data = self.store.read()
        backup = Backup(
            timestamp=utcnow(),
            data=data,
            version=self.settings.backup_schema_version,
            checksum=compute_checksum(data),
        )
        self._save(backup)
        self.last_backup = backup.timestamp.isoformat()
        logger.info(f"[{self.store.client_id}] Backup saved ({len(data['products'])} products, {len(data['orders'])} orders)")
        return backup

    def load_backups(self) -> list[dict[str, Any]]:
        """Stored backup records, oldest first. Unreadable storage reads as empty."""
        raw = self.storage.get_item(self.key)
        if raw is None:
            return []
        try:
            records = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"[{self.store.client_id}] Backup storage does not parse, ignoring it: {e}")
            return []
        if not isinstance(records, list):
            logger.error(f"[{self.store.client_id}] Backup storage is not a list, ignoring it")
            return []
        return records

    def _save(self, backup: Backup) -> None:
        records = self.load_backups()
        records.append(backup.model_dump(mode="json"))
        retention = max(1, self.settings.backup_retention)
        if len(records) > retention:
            logger.debug(f"[{self.store.client_id}] Pruning {len(records) - retention} old backup(s)")
            records = records[-retention:]

        try:
            self.storage.set_item(self.key, json.dumps(records))
        except CapacityError as e:
            logger.warning(f"[{self.store.client_id}] Backup storage full, keeping only the newest backup: {e}")
            try:
                self.storage.set_item(self.key, json.dumps(records[-1:]))
            except CapacityError:
                logger.error(f"[{self.store.client_id}] Could not save even a single backup")
                raise

    def verify(self, backup: Union[Backup, dict[str, Any]]) -> bool:
        """True if the backup parses, its checksum matches and its data is well-formed."""
        try:
            self._check(backup)
        except (ValidationError, ChecksumMismatchError, StructuralError):
            return False
        return True

    def _check(self, backup: Union[Backup, dict[str, Any]]) -> Backup:
        if not isinstance(backup, Backup):
            backup = Backup.model_validate(backup)
        actual = compute_checksum(backup.data)
        if actual != backup.checksum:
            raise ChecksumMismatchError(
                "Backup checksum mismatch",
                {"timestamp": backup.timestamp.isoformat(), "expected": backup.checksum[:12], "actual": actual[:12]},
            )
        validate_structure(backup.data)
        return backup

    def export(self) -> str:
        """A backup record of the current snapshot as JSON text (not saved)."""
        data = self.store.read()
        backup = Backup(data=data, version=self.settings.backup_schema_version, checksum=compute_checksum(data))
        return backup.model_dump_json(indent=2)

    def status(self) -> dict[str, Any]:
        return {
            "is_recovering": self.is_recovering,
            "backup_count": len(self.load_backups()),
            "last_backup": self.last_backup,
            "auto_backup_enabled": self.auto_backup_enabled,
        }

    # =========================================================================
    # Integrity & recovery
    # =========================================================================

    async def check_integrity(self) -> bool:
        """
        Check the live snapshot; recover if it is damaged.

        Returns:
            True if the live snapshot was intact
        """
        if self.store.read_raw() is None:
            return True
        try:
            self.store.read()
        except StructuralError as e:
            logger.error(f"[{self.store.client_id}] Integrity check failed: {e}")
            await self.restore_latest_valid()
            return False
        return True

    async def restore_latest_valid(self) -> Optional[Snapshot]:
        """
        Replace the live snapshot with the newest intact backup.

        Returns:
            The restored snapshot, or None if nothing was valid and the state
            was reset to defaults
        """
        if self._recovery_task is None or self._recovery_task.done():
            self._recovery_task = asyncio.get_running_loop().create_task(self._recover())
        else:
            logger.info(f"[{self.store.client_id}] Recovery already running, waiting for it")
        return await asyncio.shield(self._recovery_task)

    async def _recover(self) -> Optional[Snapshot]:
        self.is_recovering = True
        try:
            records = self.load_backups()
            for index, record in enumerate(reversed(records)):
                try:
                    backup = self._check(record)
                except (ValidationError, ChecksumMismatchError, StructuralError) as e:
                    logger.warning(f"[{self.store.client_id}] Skipping backup #{len(records) - index}: {e}")
                    continue

                restored = self.store.replace(
                    backup.data,
                    event_type="snapshot_replaced",
                    payload={"reason": "recovery", "backup_timestamp": backup.timestamp.isoformat()},
                )
                self._repush_products(restored)
                logger.info(f"[{self.store.client_id}] Recovered from backup taken at {backup.timestamp.isoformat()}")
                return restored

            logger.error(f"[{self.store.client_id}] No valid backup among {len(records)}, resetting to defaults")
            self.store.reset_to_default()
            return None
        finally:
            self.is_recovering = False

    def _repush_products(self, snapshot: Snapshot) -> None:
        if self.adapter is None:
            return
        for record in snapshot["products"]:
            if not isinstance(record, dict) or "id" not in record:
                continue
            patch = {k: v for k, v in record.items() if k not in ("id", "version")}
            self.adapter.push_later("products", record["id"], patch)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> None:
        """Start the backup timer, the integrity timer and the startup check."""
        loop = asyncio.get_running_loop()
        self.auto_backup_enabled = True
        self._timers = [
            loop.create_task(self._every(self.settings.backup_interval, self._scheduled_backup), name="backup"),
            loop.create_task(self._every(self.settings.integrity_check_interval, self.check_integrity), name="integrity"),
            loop.create_task(self._startup_check(), name="integrity:startup"),
        ]

    def stop(self) -> None:
        self.auto_backup_enabled = False
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    async def _every(self, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception(f"[{self.store.client_id}] Scheduled {job.__name__} failed")

    async def _startup_check(self) -> None:
        await asyncio.sleep(self.settings.startup_grace_delay)
        await self.check_integrity()

    async def _scheduled_backup(self) -> None:
        try:
            self.snapshot()
        except StructuralError:
            # Do not overwrite good backups with a damaged snapshot
            await self.check_integrity()
