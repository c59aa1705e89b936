"""
Automatic background sync scheduling.

Called on every status line refresh, so the check must be cheap and must
never raise. Decision order on each check:

1. Auto sync disabled or backend not configured - do nothing
2. A sync is marked in progress:
   - older than the staleness timeout: reset the mark (the worker is
     presumed dead) and continue
   - otherwise: another worker owns the sync, do nothing
3. Less than the configured interval since the last sync - do nothing
4. Mark the sync in progress and launch a background worker

The worker's completion (or a failed launch) clears the mark.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from token_pet.config.loader import SupabaseSettings
from token_pet.storage.lock_store import LockStore
from token_pet.storage.models import SyncLockRecord

from .launcher import BackgroundLauncher

logger = logging.getLogger(__name__)

STALE_SYNC_TIMEOUT_MS = 5 * 60 * 1000


def current_time_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AutoSyncStatus:
    """Snapshot for the ``autosync status`` command."""
    auto_sync_enabled: bool
    sync_interval_minutes: int
    backend_configured: bool
    sync_in_progress: bool
    last_sync_time: Optional[datetime]
    sync_due: bool


class AutoSyncScheduler:
    """Decides when to run a background sync and guards against overlap.

    Args:
        load_settings: Returns current settings; re-read on every check
        lock_store: Shared sync lock record
        launcher: Starts the background worker
        clock: Returns the current time in epoch millis
        stale_timeout_ms: Age after which an in-progress mark is abandoned
    """

    def __init__(
        self,
        load_settings: Callable[[], SupabaseSettings],
        lock_store: LockStore,
        launcher: BackgroundLauncher,
        clock: Callable[[], int] = current_time_millis,
        stale_timeout_ms: int = STALE_SYNC_TIMEOUT_MS,
    ):
        self._load_settings = load_settings
        self.lock_store = lock_store
        self.launcher = launcher
        self._clock = clock
        self.stale_timeout_ms = stale_timeout_ms

    def check_and_trigger(self) -> bool:
        """Run one scheduling check. Returns True if a worker was launched.

        Never raises: any failure is logged and treated as "no sync now".
        """
        try:
            return self._check_and_trigger()
        except Exception as e:
            logger.error("Auto sync check failed: %s", e)
            return False

    def _check_and_trigger(self) -> bool:
        settings = self._load_settings()
        if not settings.auto_sync:
            return False

        if not settings.is_configured:
            logger.warning("Auto sync enabled but Supabase configuration is incomplete")
            return False

        now = self._clock()
        record = self.lock_store.read()

        if record.sync_in_progress:
            elapsed = now - record.last_sync_time
            if elapsed <= self.stale_timeout_ms:
                logger.info("Sync already in progress (started %ds ago)", round(elapsed / 1000))
                return False

            logger.warning("Detected stale sync process (%ds), resetting sync status", round(elapsed / 1000))
            reset = SyncLockRecord(last_sync_time=now, sync_in_progress=False)
            if not self.lock_store.compare_and_set(record, reset):
                return False
            record = reset

        if now - record.last_sync_time < settings.sync_interval_ms:
            return False

        claimed = SyncLockRecord(last_sync_time=now, sync_in_progress=True)
        if not self.lock_store.compare_and_set(record, claimed):
            logger.info("Another process claimed the sync, skipping")
            return False

        try:
            self.launcher.launch(self._on_worker_exit)
        except Exception as e:
            logger.error("Failed to trigger background sync: %s", e)
            self._release()
            return False

        logger.info("Background sync triggered")
        return True

    def _on_worker_exit(self, returncode: Optional[int]) -> None:
        if returncode == 0:
            logger.info("Background sync completed successfully")
        else:
            logger.error("Background sync failed with code %s", returncode)
        try:
            self._release()
        except Exception as e:
            logger.error("Failed to update sync status: %s", e)

    def _release(self) -> None:
        release_sync_lock(self.lock_store, self._clock)

    def reset_sync_status(self) -> None:
        """Clear the in-progress mark unconditionally (operator recovery).

        The current record is read only to log what is being cleared; an
        unreadable record does not stop the reset.
        """
        try:
            record = self.lock_store.read()
        except Exception as e:
            logger.warning("Could not read sync status before reset: %s", e)
            record = SyncLockRecord()
        if record.sync_in_progress:
            stuck_seconds = round((self._clock() - record.last_sync_time) / 1000)
            logger.warning("Manually resetting stuck sync status (was stuck for %ds)", stuck_seconds)
        else:
            logger.info("Sync status manually reset (was already false)")
        self._release()

    def last_sync_time(self) -> Optional[datetime]:
        record = self.lock_store.read()
        if record.last_sync_time <= 0:
            return None
        return datetime.fromtimestamp(record.last_sync_time / 1000, tz=timezone.utc)

    def is_sync_in_progress(self) -> bool:
        return self.lock_store.read().sync_in_progress

    def status(self) -> AutoSyncStatus:
        settings = self._load_settings()
        record = self.lock_store.read()
        return AutoSyncStatus(
            auto_sync_enabled=settings.auto_sync,
            sync_interval_minutes=settings.sync_interval,
            backend_configured=settings.is_configured,
            sync_in_progress=record.sync_in_progress,
            last_sync_time=self.last_sync_time(),
            sync_due=self._clock() - record.last_sync_time >= settings.sync_interval_ms,
        )


def release_sync_lock(lock_store: LockStore, clock: Callable[[], int] = current_time_millis) -> None:
    """Mark the sync finished. Used by the worker process itself."""
    lock_store.write(SyncLockRecord(last_sync_time=clock(), sync_in_progress=False))
