"""
Sync pipeline.

One reconciliation run: resolve the date window, read local usage, mirror
the pet record, diff against the backend and upload what is missing.
Runs are resumable rather than transactional: uploaded batches stay
uploaded if a later step fails.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, TypeVar

from token_pet.sdk.supabase_client import SupabaseClient
from token_pet.storage.lock_store import LockStore
from token_pet.storage.models import PetRecord, PetUsageRecord, SyncResult, TokenUsageRecord
from token_pet.storage.pet_store import PetState, build_pet_record

from .auto_sync import current_time_millis, release_sync_lock
from .range_resolver import SyncRange, resolve_sync_range
from .usage_reader import UsageReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SyncReport:
    """What a sync run did."""
    pet_record: PetRecord
    sync_range: SyncRange
    records_read: List[TokenUsageRecord] = field(default_factory=list)
    records_to_sync: List[PetUsageRecord] = field(default_factory=list)
    result: Optional[SyncResult] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.result is None or self.result.success

    @property
    def already_synced(self) -> bool:
        return not self.dry_run and not self.records_to_sync


def run_sync(
    client: SupabaseClient,
    reader: UsageReader,
    pet_state: PetState,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
    today: Optional[date] = None,
) -> SyncReport:
    """Reconcile local usage for ``pet_state`` with the backend.

    Args:
        client: Backend client
        reader: Local usage source
        pet_state: The live pet
        start_date: Optional explicit first day (YYYY-MM-DD)
        end_date: Optional explicit last day (YYYY-MM-DD)
        dry_run: Read and report only, write nothing remotely
        now: Current time (defaults to UTC now)
        today: Last day to sync (defaults to the local date of ``now``,
            the calendar the usage tool buckets days in)

    Returns:
        SyncReport describing the run

    Raises:
        ValidationError: If the usage tool output is unusable
        SyncError: If the pet record or the diff query fails
    """
    now = now or datetime.now(timezone.utc)
    today = today or now.astimezone().date()

    pet_record = build_pet_record(pet_state, now)
    sync_range = resolve_sync_range(
        client,
        pet_id=pet_record.id,
        birth_date=pet_state.birth_date,
        today=today,
        start_date=start_date,
        end_date=end_date,
    )
    logger.info("Sync date range: %s to %s", sync_range.start_date, sync_range.end_date)

    report = SyncReport(pet_record=pet_record, sync_range=sync_range, dry_run=dry_run)

    if sync_range.is_empty:
        logger.info("Nothing to read: last synced day is already %s", sync_range.end_date)
    else:
        report.records_read = reader.read_usage(sync_range.start_date, sync_range.end_date)
    logger.info("Found %d token usage records", len(report.records_read))

    if dry_run:
        return report

    pet_id = client.sync_pet_record(pet_record)
    report.records_to_sync = client.resolve_missing_records(pet_id, report.records_read)
    if not report.records_to_sync:
        logger.info("All records are already synced")
        return report

    report.result = client.upload_usage_records(report.records_to_sync)
    if report.result.success:
        logger.info(report.result.message)
    else:
        logger.error("Sync completed with errors: %s", report.result.message)
    return report


def run_background_sync(
    lock_store: LockStore,
    run: Callable[[], T],
    clock: Callable[[], int] = current_time_millis,
) -> T:
    """Run a sync as the background worker, always releasing the lock."""
    try:
        return run()
    except Exception:
        logger.exception("Background sync run failed")
        raise
    finally:
        release_sync_lock(lock_store, clock)
