"""
Smart sync range resolution.

Decides which days a sync run reconciles:

1. Explicit dates from the caller always win (the backend is not queried)
2. First sync (nothing stored remotely) covers the pet's whole life
3. Later syncs start the day after the last stored day
4. If the backend cannot be asked, fall back to a full resync
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from token_pet.sdk.supabase_client import SupabaseClient, SyncError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncRange:
    """Inclusive window of days to reconcile, as YYYY-MM-DD strings."""
    start_date: str
    end_date: str

    @property
    def is_empty(self) -> bool:
        return self.start_date > self.end_date


def next_day(day: str) -> str:
    return (date.fromisoformat(day) + timedelta(days=1)).isoformat()


def resolve_sync_range(
    client: SupabaseClient,
    pet_id: str,
    birth_date: str,
    today: date,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> SyncRange:
    """Resolve the window for one sync run.

    Args:
        client: Backend client used to look up the last synced day
        pet_id: Pet whose usage is being synced
        birth_date: Pet creation day, YYYY-MM-DD
        today: Current day
        start_date: Optional explicit first day
        end_date: Optional explicit last day

    Returns:
        The SyncRange to read and reconcile
    """
    today_str = today.isoformat()

    if start_date or end_date:
        return SyncRange(start_date or birth_date, end_date or today_str)

    try:
        last_synced = client.get_last_sync_date(pet_id)
        if last_synced is None:
            logger.info("First sync for pet %s, syncing from %s", pet_id, birth_date)
            return SyncRange(birth_date, today_str)
        return SyncRange(next_day(last_synced), today_str)
    except (SyncError, ValueError) as e:
        logger.warning("Failed to determine smart sync range, falling back to full sync: %s", e)
        return SyncRange(birth_date, today_str)
