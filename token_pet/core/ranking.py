"""
Leaderboard ranking rules.

Shared by the remote aggregation paths and the local formatter so that a
leaderboard ranks identically no matter where it was computed.
"""

from dataclasses import dataclass, replace
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from token_pet.storage.models import LeaderboardEntry

MIN_LIMIT = 1
MAX_LIMIT = 100
DEFAULT_LIMIT = 10


class Period(Enum):
    """Time window a leaderboard covers."""
    TODAY = "today"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    ALL = "all"


class SortField(Enum):
    """Field a leaderboard is ranked by, always descending."""
    TOKENS = "tokens"
    COST = "cost"
    SURVIVAL = "survival"


@dataclass(frozen=True)
class LeaderboardQuery:
    """What to rank, by what, and how many rows to keep."""
    period: Period = Period.TODAY
    sort_by: SortField = SortField.TOKENS
    limit: int = DEFAULT_LIMIT

    def __post_init__(self):
        """Validate the limit is within the supported range."""
        if not MIN_LIMIT <= self.limit <= MAX_LIMIT:
            raise ValueError(f"limit must be between {MIN_LIMIT} and {MAX_LIMIT}")


_SORT_KEYS = {
    SortField.TOKENS: lambda entry: entry.total_tokens,
    SortField.COST: lambda entry: entry.total_cost,
    SortField.SURVIVAL: lambda entry: entry.survival_days,
}


def period_date_filter(period: Period, today: date) -> Optional[Tuple[str, str]]:
    """Map a period to a (operator, YYYY-MM-DD) filter on usage_date.

    ``today`` matches a single day, rolling windows are an inclusive lower
    bound and ``all`` is unfiltered.
    """
    if period is Period.TODAY:
        return ("eq", today.isoformat())
    if period is Period.SEVEN_DAYS:
        return ("gte", (today - timedelta(days=7)).isoformat())
    if period is Period.THIRTY_DAYS:
        return ("gte", (today - timedelta(days=30)).isoformat())
    return None


def rank_entries(entries: Iterable[LeaderboardEntry], sort_by: SortField) -> List[LeaderboardEntry]:
    """Sort descending by ``sort_by`` and assign dense ranks 1..N.

    Ties keep their input order. The input entries are not modified.
    """
    ordered = sorted(entries, key=_SORT_KEYS[sort_by], reverse=True)
    return [replace(entry, rank=index) for index, entry in enumerate(ordered, start=1)]


def top_entries(entries: Iterable[LeaderboardEntry], sort_by: SortField, limit: int) -> List[LeaderboardEntry]:
    """Rank the full set, then keep the first ``limit`` entries."""
    if limit < MIN_LIMIT:
        raise ValueError(f"limit must be >= {MIN_LIMIT}")
    return rank_entries(entries, sort_by)[:limit]
