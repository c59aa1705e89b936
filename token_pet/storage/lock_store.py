"""
Sync lock persistence.

The lock record is shared cooperatively by every invocation of the tool.
It is not an OS lock: callers read the record, decide, and write the full
record back. Writes go through a temp file and an atomic rename so readers
never observe a half-written record.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import SyncLockRecord

logger = logging.getLogger(__name__)


class LockStore(ABC):
    """Storage for the sync lock record."""

    @abstractmethod
    def read(self) -> SyncLockRecord:
        """Return the current record, or a default one if none exists."""

    @abstractmethod
    def write(self, record: SyncLockRecord) -> None:
        """Durably replace the whole record."""

    def compare_and_set(self, expected: SyncLockRecord, new: SyncLockRecord) -> bool:
        """Write ``new`` only if the stored record still equals ``expected``.

        This is a best-effort check-then-write. Two callers racing through
        the same window can both succeed; the staleness timeout bounds the
        damage.
        """
        if self.read() != expected:
            return False
        self.write(new)
        return True


class JsonFileLockStore(LockStore):
    """Lock record stored as ``{"lastSyncTime": ..., "syncInProgress": ...}``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> SyncLockRecord:
        if not self.path.exists():
            return SyncLockRecord()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("lock file does not contain a JSON object")
            return SyncLockRecord.from_json(data)
        except (OSError, ValueError) as e:
            logger.error("Failed to read last sync record %s: %s", self.path, e)
            return SyncLockRecord()

    def write(self, record: SyncLockRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".last-sync-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_json(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except Exception:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.info("Sync status updated: syncInProgress=%s", record.sync_in_progress)


class InMemoryLockStore(LockStore):
    """Process-local lock store, used by tests and single-process setups."""

    def __init__(self, record: Optional[SyncLockRecord] = None):
        self._record = record or SyncLockRecord()
        self._mutex = threading.Lock()

    def read(self) -> SyncLockRecord:
        with self._mutex:
            return self._record

    def write(self, record: SyncLockRecord) -> None:
        with self._mutex:
            self._record = record

    def compare_and_set(self, expected: SyncLockRecord, new: SyncLockRecord) -> bool:
        with self._mutex:
            if self._record != expected:
                return False
            self._record = new
            return True
