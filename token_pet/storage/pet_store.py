"""
Read-only access to the locally maintained pet state.

The pet's energy and feeding lifecycle is owned by the status line; this
module only reads what it leaves on disk: the live pet in
``pet-state.json`` and deceased pets under ``graveyard/``.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from .models import AnimalType, PetRecord

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC.

    Fractional seconds of any length are accepted; Postgres trims trailing
    zeros (``.5``) and some writers emit nanoseconds.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def whole_days_between(start: datetime, end: datetime) -> int:
    """Number of complete days from ``start`` to ``end`` (floor, never negative)."""
    return max(0, (end - start) // DAY)


@dataclass(frozen=True)
class PetState:
    """Snapshot of the live pet as written by the status line."""
    uuid: str
    pet_name: str
    animal_type: str
    birth_time: datetime
    energy: float
    total_lifetime_tokens: int = 0
    emoji: Optional[str] = None
    death_time: Optional[datetime] = None

    @property
    def is_dead(self) -> bool:
        return self.energy <= 0

    @property
    def birth_date(self) -> str:
        """Local calendar day of birth, matching how usage days are bucketed."""
        return self.birth_time.astimezone().date().isoformat()


@dataclass(frozen=True)
class GraveyardEntry:
    """A deceased pet kept for the offline leaderboard."""
    pet_name: str
    animal_type: str
    total_lifetime_tokens: int
    survival_days: int


def build_pet_record(state: PetState, now: datetime) -> PetRecord:
    """Derive the remote pet record from local state.

    A pet with no energy left is terminal. Its death time is the one
    stored locally, or ``now`` the first time it is observed.
    """
    emoji = state.emoji
    if emoji is None:
        try:
            emoji = AnimalType(state.animal_type).emoji
        except ValueError:
            emoji = None

    record = PetRecord(
        id=state.uuid,
        pet_name=state.pet_name,
        animal_type=state.animal_type,
        emoji=emoji,
        birth_time=state.birth_time,
    )
    if state.is_dead:
        death_time = state.death_time or now
        record = record.with_death(death_time, whole_days_between(state.birth_time, death_time))
    return record


class PetStore:
    """Reads pet state files from the tool's home directory."""

    STATE_FILE = "pet-state.json"
    GRAVEYARD_DIR = "graveyard"

    def __init__(self, home_dir: Path):
        self.home_dir = Path(home_dir)

    @property
    def state_path(self) -> Path:
        return self.home_dir / self.STATE_FILE

    @property
    def graveyard_path(self) -> Path:
        return self.home_dir / self.GRAVEYARD_DIR

    def load_state(self) -> Optional[PetState]:
        """Load the live pet, or None when no pet has been created.

        Raises:
            ValueError: If the state file exists but is malformed
        """
        if not self.state_path.exists():
            return None

        with open(self.state_path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid pet state file {self.state_path}: {e}")

        if not isinstance(data, dict):
            raise ValueError(f"Pet state in {self.state_path} must be a JSON object")

        for key in ("uuid", "petName", "animalType", "birthTime"):
            if not data.get(key):
                raise ValueError(f"Pet state is missing required field '{key}'")

        death_time = data.get("deathTime")
        return PetState(
            uuid=str(data["uuid"]),
            pet_name=str(data["petName"]),
            animal_type=str(data["animalType"]),
            birth_time=parse_timestamp(str(data["birthTime"])),
            energy=float(data.get("energy", 0)),
            total_lifetime_tokens=int(data.get("totalLifetimeTokens") or 0),
            emoji=data.get("emoji"),
            death_time=parse_timestamp(str(death_time)) if death_time else None,
        )

    def load_graveyard(self) -> List[GraveyardEntry]:
        """Load every readable graveyard file. Broken files are skipped."""
        if not self.graveyard_path.is_dir():
            return []

        entries = []
        for path in sorted(self.graveyard_path.glob("*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                entries.append(GraveyardEntry(
                    pet_name=str(data["petName"]),
                    animal_type=str(data["animalType"]),
                    total_lifetime_tokens=int(data.get("totalLifetimeTokens") or 0),
                    survival_days=int(data.get("survivalDays") or 0),
                ))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable graveyard file %s: %s", path, e)
        return entries
