"""
Supabase REST client for pet and token usage sync.

Talks to the PostgREST endpoints of the backend over httpx. Every failure
that reaches a caller is a SyncError; the underlying RemoteHTTPError or
transport error is kept as its cause.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from token_pet.core.ranking import (
    LeaderboardQuery,
    period_date_filter,
    top_entries,
)
from token_pet.storage.models import (
    LeaderboardEntry,
    PetRecord,
    PetUsageRecord,
    SyncResult,
    TokenUsageRecord,
)
from token_pet.storage.pet_store import parse_timestamp, whole_days_between

logger = logging.getLogger(__name__)

SUCCESS_CODES = (200, 201)
BATCH_SIZE = 100
DEFAULT_TIMEOUT = 30.0

PET_TABLE = "pet_records"
USAGE_TABLE = "token_usage"
LEADERBOARD_RPC = "rpc/get_leaderboard"

MERGE_DUPLICATES = "resolution=merge-duplicates,return=minimal"

PET_COMPARED_FIELDS = ("pet_name", "animal_type", "emoji", "birth_time", "death_time", "survival_days")
TIMESTAMP_FIELDS = ("birth_time", "death_time")

UsageKey = Tuple[str, int, int, int, float]

_TRANSPORT_ERRORS = (httpx.HTTPError, ValueError)


class RemoteHTTPError(Exception):
    """Raised when the backend answers with a non-success status."""
    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SyncError(Exception):
    """Raised for any failed remote sync operation."""
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def usage_key(usage_date: str, total_tokens: Any, input_tokens: Any, output_tokens: Any, cost_usd: Any) -> UsageKey:
    """Content identity of a usage row.

    Two rows are the same only if every component matches; a corrected day
    (same date, different numbers) is a different row.
    """
    return (
        str(usage_date),
        int(total_tokens),
        int(input_tokens),
        int(output_tokens),
        round(float(cost_usd), 6),
    )


def record_key(record: TokenUsageRecord) -> UsageKey:
    return usage_key(
        record.usage_date,
        record.total_tokens,
        record.input_tokens,
        record.output_tokens,
        record.cost_usd,
    )


def _normalize_pet_field(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in TIMESTAMP_FIELDS:
        if isinstance(value, datetime):
            return value.astimezone(timezone.utc)
        return parse_timestamp(str(value)).astimezone(timezone.utc)
    if name == "survival_days":
        return int(value)
    return value


def pet_rows_match(local: Dict[str, Any], remote: Dict[str, Any]) -> bool:
    """True when every mutable pet field is the same on both sides."""
    for name in PET_COMPARED_FIELDS:
        try:
            if _normalize_pet_field(name, local.get(name)) != _normalize_pet_field(name, remote.get(name)):
                return False
        except (TypeError, ValueError):
            return False
    return True


class SupabaseClient:
    """Client for the pet_records / token_usage tables and leaderboard RPC.

    Pass ``http_client`` to reuse a configured httpx client (for testing).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
        now: Optional[Callable[[], datetime]] = None,
    ):
        if not url or not url.strip():
            raise ValueError("url is required and cannot be empty")
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.base_url = f"{url.strip().rstrip('/')}/rest/v1"
        self.headers = {
            "Content-Type": "application/json",
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
        }
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)
        self._now = now or (lambda: datetime.now(timezone.utc))

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "SupabaseClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Pet records
    # ------------------------------------------------------------------

    def sync_pet_record(self, record: PetRecord) -> str:
        """Upsert the pet record, skipping the write when nothing changed.

        A death time already stored remotely is kept as is: terminal fields
        are written once and never cleared.

        Returns:
            The pet id

        Raises:
            SyncError: If the upsert fails or the remote row is invalid
        """
        try:
            existing = self._fetch_pet_row(record.id)
        except (RemoteHTTPError,) + _TRANSPORT_ERRORS as e:
            logger.debug("Could not look up pet record %s, writing it anyway: %s", record.id, e)
            existing = None

        if existing is not None:
            try:
                record = self._keep_remote_death(record, existing)
            except (TypeError, ValueError) as e:
                raise SyncError(
                    f"Remote pet record for {record.pet_name} (UUID: {record.id}) is invalid: {e}", e
                ) from e
            if pet_rows_match(record.to_row(), existing):
                logger.debug("Pet record %s unchanged, skipping upsert", record.id)
                return record.id

        try:
            self._request("POST", PET_TABLE, json=record.to_row(), prefer=MERGE_DUPLICATES)
        except (RemoteHTTPError,) + _TRANSPORT_ERRORS as e:
            raise SyncError(
                f"Failed to sync pet record for {record.pet_name} (UUID: {record.id}): {e}", e
            ) from e

        logger.info("Pet record %s upserted", record.id)
        return record.id

    def _fetch_pet_row(self, pet_id: str) -> Optional[Dict[str, Any]]:
        response = self._request(
            "GET", PET_TABLE, params=[("id", f"eq.{pet_id}"), ("limit", "1")]
        )
        rows = response.json()
        if not isinstance(rows, list):
            raise ValueError("pet record lookup did not return a list")
        return rows[0] if rows else None

    @staticmethod
    def _keep_remote_death(record: PetRecord, existing: Dict[str, Any]) -> PetRecord:
        remote_death = existing.get("death_time")
        if not remote_death:
            return record
        death_time = parse_timestamp(str(remote_death))
        if record.death_time == death_time:
            return record
        survival_days = existing.get("survival_days")
        if survival_days is None:
            survival_days = whole_days_between(record.birth_time, death_time)
        return record.with_death(death_time, int(survival_days))

    # ------------------------------------------------------------------
    # Token usage
    # ------------------------------------------------------------------

    def resolve_missing_records(self, pet_id: str, records: Sequence[TokenUsageRecord]) -> List[PetUsageRecord]:
        """Return the records not already stored remotely, tagged with ``pet_id``.

        Only remote rows inside the min/max date of ``records`` are fetched.

        Raises:
            SyncError: If existing rows cannot be queried
        """
        if not records:
            return []

        dates = [record.usage_date for record in records]
        params = [
            ("pet_id", f"eq.{pet_id}"),
            ("usage_date", f"gte.{min(dates)}"),
            ("usage_date", f"lte.{max(dates)}"),
            ("select", "usage_date,total_tokens,input_tokens,output_tokens,cost_usd"),
        ]
        try:
            rows = self._request("GET", USAGE_TABLE, params=params).json()
            existing = {
                usage_key(
                    row["usage_date"],
                    row["total_tokens"],
                    row["input_tokens"],
                    row["output_tokens"],
                    row["cost_usd"],
                )
                for row in rows
            }
        except (RemoteHTTPError, KeyError, TypeError) + _TRANSPORT_ERRORS as e:
            raise SyncError(f"Failed to check existing records for pet {pet_id}: {e}", e) from e

        missing = [PetUsageRecord(pet_id, record) for record in records if record_key(record) not in existing]
        logger.info("%d of %d usage records need syncing", len(missing), len(records))
        return missing

    def upload_usage_records(self, records: Sequence[PetUsageRecord]) -> SyncResult:
        """Upload records in batches of BATCH_SIZE.

        A failed batch counts entirely as failed and the upload moves on to
        the next batch.
        """
        result = SyncResult(total=len(records))
        if not records:
            result.message = "No records to sync"
            return result

        for start in range(0, len(records), BATCH_SIZE):
            batch = records[start:start + BATCH_SIZE]
            self._upload_batch(batch, result)

        if result.success:
            result.message = f"Successfully synced {result.processed} records"
        else:
            result.message = f"Synced {result.processed} records with {result.failed} failures"
        return result

    def _upload_batch(self, batch: Sequence[PetUsageRecord], result: SyncResult) -> None:
        try:
            self._request(
                "POST",
                USAGE_TABLE,
                json=[record.to_row() for record in batch],
                prefer=MERGE_DUPLICATES,
            )
        except RemoteHTTPError as e:
            result.failed += len(batch)
            result.errors.append(f"Batch sync failed with status {e.status_code}: {e.body}")
            logger.warning("Usage batch of %d failed with status %d", len(batch), e.status_code)
            return
        except httpx.HTTPError as e:
            result.failed += len(batch)
            result.errors.append(f"Batch sync error: {e}")
            logger.warning("Usage batch of %d failed: %s", len(batch), e)
            return
        result.processed += len(batch)

    def get_last_sync_date(self, pet_id: str) -> Optional[str]:
        """Most recent usage_date stored for the pet, or None if never synced.

        Raises:
            SyncError: If the query fails (never reported as None)
        """
        params = [
            ("pet_id", f"eq.{pet_id}"),
            ("select", "usage_date"),
            ("order", "usage_date.desc"),
            ("limit", "1"),
        ]
        try:
            rows = self._request("GET", USAGE_TABLE, params=params).json()
            if not isinstance(rows, list):
                raise ValueError("last sync date query did not return a list")
            return str(rows[0]["usage_date"]) if rows else None
        except (RemoteHTTPError, KeyError, TypeError) + _TRANSPORT_ERRORS as e:
            raise SyncError(f"Failed to get last sync date for pet {pet_id}: {e}", e) from e

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------

    def query_leaderboard(self, query: LeaderboardQuery) -> List[LeaderboardEntry]:
        """Ask the backend for a pre-aggregated ranking.

        Raises:
            SyncError: If the RPC is unavailable or fails
        """
        body = {
            "date_filter": query.period.value,
            "sort_by": query.sort_by.value,
            "limit_count": query.limit,
        }
        try:
            rows = self._request("POST", LEADERBOARD_RPC, json=body).json()
            if not isinstance(rows, list):
                raise ValueError("leaderboard RPC did not return a list")
            return [_entry_from_row(row, index) for index, row in enumerate(rows, start=1)]
        except (RemoteHTTPError, KeyError, TypeError) + _TRANSPORT_ERRORS as e:
            raise SyncError(f"Leaderboard query failed: {e}", e) from e

    def query_leaderboard_fallback(self, query: LeaderboardQuery, today: Optional[date] = None) -> List[LeaderboardEntry]:
        """Build the ranking client-side from raw pet and usage rows.

        Produces the same entries as ``query_leaderboard``, with more
        transfer. Pets without usage in the period rank with zero totals.

        Raises:
            SyncError: If either query fails
        """
        now = self._now()
        today = today or now.astimezone().date()

        usage_params = [("select", "pet_id,total_tokens,cost_usd")]
        date_filter = period_date_filter(query.period, today)
        if date_filter is not None:
            operator, value = date_filter
            usage_params.append(("usage_date", f"{operator}.{value}"))

        try:
            pets = self._request(
                "GET", PET_TABLE, params=[("select", "id,pet_name,animal_type,birth_time,death_time")]
            ).json()
            usage_rows = self._request("GET", USAGE_TABLE, params=usage_params).json()

            tokens: Dict[str, int] = defaultdict(int)
            costs: Dict[str, float] = defaultdict(float)
            for row in usage_rows:
                tokens[row["pet_id"]] += int(row.get("total_tokens") or 0)
                costs[row["pet_id"]] += float(row.get("cost_usd") or 0)

            entries = []
            for pet in pets:
                birth_time = parse_timestamp(str(pet["birth_time"]))
                death_time = parse_timestamp(str(pet["death_time"])) if pet.get("death_time") else None
                entries.append(LeaderboardEntry(
                    rank=0,
                    pet_name=pet["pet_name"],
                    animal_type=pet["animal_type"],
                    total_tokens=tokens.get(pet["id"], 0),
                    total_cost=round(costs.get(pet["id"], 0.0), 4),
                    survival_days=whole_days_between(birth_time, death_time or now),
                    is_alive=death_time is None,
                ))
        except (RemoteHTTPError, KeyError, TypeError) + _TRANSPORT_ERRORS as e:
            raise SyncError(f"Fallback leaderboard query failed: {e}", e) from e

        return top_entries(entries, query.sort_by, query.limit)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer

        response = self._http.request(
            method,
            f"{self.base_url}/{path}",
            params=params,
            json=json,
            headers=headers,
        )
        if response.status_code not in SUCCESS_CODES:
            raise RemoteHTTPError(
                f"{method} {path} failed with status {response.status_code}",
                response.status_code,
                response.text,
            )
        return response


def _entry_from_row(row: Dict[str, Any], position: int) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=int(row.get("rank") or position),
        pet_name=row["pet_name"],
        animal_type=row["animal_type"],
        total_tokens=int(row.get("total_tokens") or 0),
        total_cost=float(row.get("total_cost") or 0),
        survival_days=int(row.get("survival_days") or 0),
        is_alive=bool(row.get("is_alive", True)),
    )
