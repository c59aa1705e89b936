"""
Data models for the sync and leaderboard layers.

Defines the records exchanged with the remote backend and the lock record
persisted between invocations.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class AnimalType(Enum):
    """Kinds of pet a local installation can adopt."""
    CAT = "cat"
    DOG = "dog"
    RABBIT = "rabbit"
    PANDA = "panda"
    FOX = "fox"

    @property
    def emoji(self) -> str:
        return _ANIMAL_EMOJI[self]

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


_ANIMAL_EMOJI = {
    AnimalType.CAT: "🐱",
    AnimalType.DOG: "🐶",
    AnimalType.RABBIT: "🐰",
    AnimalType.PANDA: "🐼",
    AnimalType.FOX: "🦊",
}


def animal_label(animal_type: str) -> str:
    """Return '<emoji> <Name>' for a known animal type, or the raw value."""
    try:
        animal = AnimalType(animal_type)
    except ValueError:
        return animal_type
    return f"{animal.emoji} {animal.display_name}"


@dataclass(frozen=True)
class TokenUsageRecord:
    """One day of token usage as reported by the usage tool.

    Records are never mutated. A corrected day arrives as a new record
    with the same date and different content.
    """
    usage_date: str  # YYYY-MM-DD
    input_tokens: int
    output_tokens: int
    cache_tokens: int
    total_tokens: int
    cost_usd: float
    model_name: str

    def to_row(self, pet_id: str) -> Dict[str, Any]:
        """Serialize for the token_usage table."""
        return {
            "pet_id": pet_id,
            "usage_date": self.usage_date,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_tokens": self.cache_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.cost_usd,
            "model_name": self.model_name,
        }


@dataclass(frozen=True)
class PetUsageRecord:
    """A usage record tagged with the pet it belongs to."""
    pet_id: str
    record: TokenUsageRecord

    def to_row(self) -> Dict[str, Any]:
        return self.record.to_row(self.pet_id)


@dataclass(frozen=True)
class PetRecord:
    """Durable per-installation pet entity mirrored to the backend.

    ``death_time`` and ``survival_days`` are set once, when the pet dies.
    """
    id: str
    pet_name: str
    animal_type: str
    birth_time: datetime
    emoji: Optional[str] = None
    death_time: Optional[datetime] = None
    survival_days: Optional[int] = None

    def __post_init__(self):
        """Validate lifecycle ordering."""
        if self.death_time is not None and self.death_time < self.birth_time:
            raise ValueError("death_time cannot precede birth_time")

    @property
    def is_alive(self) -> bool:
        return self.death_time is None

    def with_death(self, death_time: datetime, survival_days: Optional[int]) -> "PetRecord":
        return replace(self, death_time=death_time, survival_days=survival_days)

    def to_row(self) -> Dict[str, Any]:
        """Serialize for the pet_records table."""
        row: Dict[str, Any] = {
            "id": self.id,
            "pet_name": self.pet_name,
            "animal_type": self.animal_type,
            "emoji": self.emoji,
            "birth_time": self.birth_time.isoformat(),
        }
        if self.death_time is not None:
            row["death_time"] = self.death_time.isoformat()
            row["survival_days"] = self.survival_days
        return row


@dataclass(frozen=True)
class SyncLockRecord:
    """Process-wide sync state shared between invocations."""
    last_sync_time: int = 0  # epoch millis
    sync_in_progress: bool = False

    def to_json(self) -> Dict[str, Any]:
        return {
            "lastSyncTime": self.last_sync_time,
            "syncInProgress": self.sync_in_progress,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SyncLockRecord":
        last_sync_time = data.get("lastSyncTime") or 0
        if (
            isinstance(last_sync_time, bool)
            or not isinstance(last_sync_time, (int, float))
            or not math.isfinite(last_sync_time)
        ):
            raise ValueError(f"lastSyncTime must be a finite number, got {last_sync_time!r}")
        return cls(
            last_sync_time=int(last_sync_time),
            sync_in_progress=bool(data.get("syncInProgress", False)),
        )


@dataclass
class LeaderboardEntry:
    """One ranked row of the leaderboard. Derived, never persisted."""
    rank: int
    pet_name: str
    animal_type: str
    total_tokens: int
    total_cost: float
    survival_days: int
    is_alive: bool


@dataclass
class SyncResult:
    """Outcome of a batched upload."""
    total: int
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.failed == 0
