"""
Leaderboard collection and preparation.

Data comes from the first source that answers:

1. The backend's aggregate RPC
2. Client-side aggregation of raw backend rows
3. Local pet state and graveyard (offline mode, no cost data)

Whatever the source, entries are re-ranked before they are truncated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from token_pet.sdk.supabase_client import SupabaseClient, SyncError
from token_pet.storage.models import LeaderboardEntry
from token_pet.storage.pet_store import GraveyardEntry, PetState, PetStore, whole_days_between

from .ranking import LeaderboardQuery, SortField, rank_entries

logger = logging.getLogger(__name__)

OFFLINE_COST_PLACEHOLDER = "N/A"

EMPTY_ONLINE_SUGGESTIONS = (
    "Try a different time period (--period all)",
    "Check if data sync is working with \"token-pet sync\"",
    "Create some pets to see them in the leaderboard",
)
EMPTY_OFFLINE_SUGGESTIONS = (
    "Check if you have any pets created",
    "Configure Supabase connection for full functionality",
    "Try running \"token-pet sync\" to upload data",
)


@dataclass(frozen=True)
class LeaderboardView:
    """Ranked, truncated entries ready for display."""
    query: LeaderboardQuery
    entries: List[LeaderboardEntry]
    offline: bool

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def suggestions(self) -> Tuple[str, ...]:
        return EMPTY_OFFLINE_SUGGESTIONS if self.offline else EMPTY_ONLINE_SUGGESTIONS

    def format_cost(self, entry: LeaderboardEntry) -> str:
        if self.offline:
            return OFFLINE_COST_PLACEHOLDER
        return f"${entry.total_cost:.2f}"


def build_view(entries: List[LeaderboardEntry], query: LeaderboardQuery, offline: bool = False) -> LeaderboardView:
    """Rank every entry by the query's sort field, then keep ``limit``."""
    ranked = rank_entries(entries, query.sort_by)
    return LeaderboardView(query=query, entries=ranked[:query.limit], offline=offline)


def fetch_remote_leaderboard(client: SupabaseClient, query: LeaderboardQuery) -> List[LeaderboardEntry]:
    """Query the RPC, falling back to client-side aggregation.

    Raises:
        SyncError: If both remote paths fail
    """
    try:
        return client.query_leaderboard(query)
    except SyncError as e:
        logger.info("Advanced leaderboard query failed, falling back to simple query: %s", e)
    return client.query_leaderboard_fallback(query)


def local_leaderboard_entries(
    state: Optional[PetState],
    graveyard: List[GraveyardEntry],
    now: Optional[datetime] = None,
) -> List[LeaderboardEntry]:
    """Entries for the live pet and the graveyard, ranked by tokens."""
    now = now or datetime.now(timezone.utc)
    entries = []
    if state is not None:
        entries.append(LeaderboardEntry(
            rank=0,
            pet_name=state.pet_name,
            animal_type=state.animal_type,
            total_tokens=state.total_lifetime_tokens,
            total_cost=0.0,
            survival_days=whole_days_between(state.birth_time, state.death_time or now),
            is_alive=not state.is_dead,
        ))
    for grave in graveyard:
        entries.append(LeaderboardEntry(
            rank=0,
            pet_name=grave.pet_name,
            animal_type=grave.animal_type,
            total_tokens=grave.total_lifetime_tokens,
            total_cost=0.0,
            survival_days=grave.survival_days,
            is_alive=False,
        ))
    return rank_entries(entries, SortField.TOKENS)


def load_local_leaderboard(pet_store: PetStore, now: Optional[datetime] = None) -> List[LeaderboardEntry]:
    """Read local entries, degrading to an empty board if the state is unreadable."""
    try:
        state = pet_store.load_state()
    except (OSError, ValueError) as e:
        logger.warning("Failed to read local pet data, showing empty leaderboard: %s", e)
        state = None
    return local_leaderboard_entries(state, pet_store.load_graveyard(), now)


def collect_leaderboard(
    client: Optional[SupabaseClient],
    pet_store: PetStore,
    query: LeaderboardQuery,
    now: Optional[datetime] = None,
) -> LeaderboardView:
    """Fetch from the best available source and prepare the view.

    ``client`` is None when the backend is not configured.
    """
    if client is not None:
        try:
            entries = fetch_remote_leaderboard(client, query)
            logger.info("Retrieved %d leaderboard records from Supabase", len(entries))
            return build_view(entries, query, offline=False)
        except SyncError as e:
            logger.info("Supabase connection failed, using local data: %s", e)
    else:
        logger.info("Supabase configuration missing, using local data")

    entries = load_local_leaderboard(pet_store, now)
    logger.info("Using local graveyard data with %d records", len(entries))
    return build_view(entries, query, offline=True)
