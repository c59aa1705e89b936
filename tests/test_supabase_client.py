"""
Unit tests for the Supabase REST client.

Uses httpx.MockTransport so that no network access is needed.
"""

import json
from datetime import date, datetime, timezone

import httpx
import pytest

from token_pet.core.ranking import LeaderboardQuery, Period, SortField
from token_pet.core.usage_reader import _round_cost
from token_pet.sdk.supabase_client import (
    BATCH_SIZE,
    MERGE_DUPLICATES,
    SupabaseClient,
    SyncError,
    pet_rows_match,
    record_key,
    usage_key,
)
from token_pet.storage.models import PetRecord, PetUsageRecord, TokenUsageRecord

NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)
BIRTH = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def _usage(day="2024-01-01", total=1000, input_tokens=600, output_tokens=400, cost=0.5):
    return TokenUsageRecord(
        usage_date=day,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_tokens=0,
        total_tokens=total,
        cost_usd=cost,
        model_name="claude-sonnet-4-20250514",
    )


def _pet(**overrides):
    values = dict(id="pet-1", pet_name="Mochi", animal_type="cat", emoji="🐱", birth_time=BIRTH)
    values.update(overrides)
    return PetRecord(**values)


class Backend:
    """Scripted PostgREST stand-in that records every request."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.replace("/rest/v1/", "", 1)
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, text="not found")
        if callable(handler):
            return handler(request)
        status, payload = handler
        return httpx.Response(status, json=payload)

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path.endswith("/" + path)]


class UsageTable:
    """In-memory token_usage table; cost is stored at four decimal places like the real column."""

    def __init__(self):
        self.rows = []

    def insert(self, request: httpx.Request) -> httpx.Response:
        for row in json.loads(request.content):
            self.rows.append(dict(row, cost_usd=round(row["cost_usd"], 4)))
        return httpx.Response(201)

    def select(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        pet_id = params["pet_id"].split(".", 1)[1]
        bounds = dict(value.split(".", 1) for value in params.get_list("usage_date"))
        rows = [
            row for row in self.rows
            if row["pet_id"] == pet_id and bounds["gte"] <= row["usage_date"] <= bounds["lte"]
        ]
        return httpx.Response(200, json=rows)


def _client(backend):
    http_client = httpx.Client(transport=httpx.MockTransport(backend))
    return SupabaseClient("https://demo.supabase.co", "anon-key", http_client=http_client, now=lambda: NOW)


class TestClientSetup:
    """Test construction and request headers."""

    def test_requires_url_and_key(self):
        with pytest.raises(ValueError):
            SupabaseClient("", "key")
        with pytest.raises(ValueError):
            SupabaseClient("https://demo.supabase.co", "  ")

    def test_base_url_and_headers(self):
        backend = Backend({("GET", "token_usage"): (200, [])})
        client = _client(backend)

        client.get_last_sync_date("pet-1")

        request = backend.requests[0]
        assert str(request.url).startswith("https://demo.supabase.co/rest/v1/token_usage")
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"


class TestPetRecordSync:
    """Test pet record upsert behavior."""

    def test_identical_record_skips_upsert(self):
        pet = _pet()
        backend = Backend({
            ("GET", "pet_records"): (200, [dict(pet.to_row(), birth_time="2024-01-01T08:00:00Z")]),
            ("POST", "pet_records"): (201, None),
        })

        assert _client(backend).sync_pet_record(pet) == "pet-1"
        assert backend.calls("POST", "pet_records") == []

    def test_new_death_triggers_upsert(self):
        alive = _pet()
        dead = alive.with_death(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc), 14)
        backend = Backend({
            ("GET", "pet_records"): (200, [alive.to_row()]),
            ("POST", "pet_records"): (201, None),
        })

        _client(backend).sync_pet_record(dead)

        posts = backend.calls("POST", "pet_records")
        assert len(posts) == 1
        assert posts[0].headers["Prefer"] == MERGE_DUPLICATES
        body = json.loads(posts[0].content)
        assert body["death_time"].startswith("2024-01-15T09:00:00")
        assert body["survival_days"] == 14

    def test_remote_death_time_is_kept(self):
        remote = _pet().with_death(datetime(2024, 1, 10, tzinfo=timezone.utc), 8)
        local = _pet().with_death(datetime(2024, 1, 12, tzinfo=timezone.utc), 10)
        backend = Backend({
            ("GET", "pet_records"): (200, [remote.to_row()]),
            ("POST", "pet_records"): (201, None),
        })

        _client(backend).sync_pet_record(local)

        assert backend.calls("POST", "pet_records") == []

    def test_remote_death_with_short_fraction(self):
        local = _pet().with_death(datetime(2024, 1, 5, 10, 0, 0, 500000, tzinfo=timezone.utc), 4)
        backend = Backend({
            ("GET", "pet_records"): (200, [dict(
                _pet().to_row(), birth_time="2024-01-01T08:00:00+00:00",
                death_time="2024-01-05T10:00:00.5+00:00", survival_days=4,
            )]),
            ("POST", "pet_records"): (201, None),
        })

        assert _client(backend).sync_pet_record(local) == "pet-1"
        assert backend.calls("POST", "pet_records") == []

    def test_remote_death_before_birth_raises_sync_error(self):
        backend = Backend({
            ("GET", "pet_records"): (200, [dict(_pet().to_row(), death_time="2023-12-01T00:00:00Z")]),
            ("POST", "pet_records"): (201, None),
        })

        with pytest.raises(SyncError, match="invalid"):
            _client(backend).sync_pet_record(_pet())
        assert backend.calls("POST", "pet_records") == []

    def test_unparseable_remote_death_raises_sync_error(self):
        backend = Backend({
            ("GET", "pet_records"): (200, [dict(_pet().to_row(), death_time="yesterday")]),
        })

        with pytest.raises(SyncError, match="Mochi"):
            _client(backend).sync_pet_record(_pet())

    def test_lookup_failure_still_writes(self):
        backend = Backend({
            ("GET", "pet_records"): (500, {"message": "oops"}),
            ("POST", "pet_records"): (201, None),
        })

        _client(backend).sync_pet_record(_pet())

        assert len(backend.calls("POST", "pet_records")) == 1

    def test_upsert_failure_raises(self):
        backend = Backend({
            ("GET", "pet_records"): (200, []),
            ("POST", "pet_records"): (401, {"message": "bad key"}),
        })

        with pytest.raises(SyncError, match="Mochi"):
            _client(backend).sync_pet_record(_pet())

    def test_rows_match_normalizes_timestamps(self):
        local = _pet().to_row()
        remote = dict(local, birth_time="2024-01-01T08:00:00+00:00")

        assert pet_rows_match(local, remote)
        assert not pet_rows_match(local, dict(remote, pet_name="Other"))


class TestMissingRecordResolution:
    """Test the content-key diff against existing rows."""

    def test_only_unseen_rows_returned(self):
        existing = {
            "usage_date": "2024-01-01", "total_tokens": 1000,
            "input_tokens": 600, "output_tokens": 400, "cost_usd": 0.5,
        }
        backend = Backend({("GET", "token_usage"): (200, [existing])})
        records = [_usage("2024-01-01"), _usage("2024-01-02", total=2000, input_tokens=1500, output_tokens=500)]

        missing = _client(backend).resolve_missing_records("pet-1", records)

        assert [m.record.usage_date for m in missing] == ["2024-01-02"]
        assert all(m.pet_id == "pet-1" for m in missing)

        params = backend.requests[0].url.params
        assert params.get_list("usage_date") == ["gte.2024-01-01", "lte.2024-01-02"]
        assert params["pet_id"] == "eq.pet-1"

    def test_corrected_day_is_new_row(self):
        existing = {
            "usage_date": "2024-01-01", "total_tokens": 1000,
            "input_tokens": 600, "output_tokens": 400, "cost_usd": 0.5,
        }
        backend = Backend({("GET", "token_usage"): (200, [existing])})

        missing = _client(backend).resolve_missing_records("pet-1", [_usage(total=1200, input_tokens=800)])

        assert len(missing) == 1

    def test_empty_input_makes_no_request(self):
        backend = Backend()

        assert _client(backend).resolve_missing_records("pet-1", []) == []
        assert backend.requests == []

    def test_query_failure_raises(self):
        backend = Backend({("GET", "token_usage"): (503, {})})

        with pytest.raises(SyncError):
            _client(backend).resolve_missing_records("pet-1", [_usage()])

    def test_cost_compared_at_fixed_precision(self):
        assert usage_key("2024-01-01", 1, 1, 0, 0.1 + 0.2) == record_key(
            _usage(total=1, input_tokens=1, output_tokens=0, cost=0.3)
        )

    def test_second_resolve_after_upload_is_empty(self):
        table = UsageTable()
        backend = Backend({("GET", "token_usage"): table.select, ("POST", "token_usage"): table.insert})
        client = _client(backend)
        records = [
            _usage("2024-01-01"),
            _usage("2024-01-02", total=2000, input_tokens=1500, output_tokens=500, cost=_round_cost(0.1 + 0.2)),
            _usage("2024-01-03", total=7, input_tokens=4, output_tokens=3, cost=_round_cost(0.00015)),
        ]

        missing = client.resolve_missing_records("pet-1", records)
        assert len(missing) == 3
        assert client.upload_usage_records(missing).processed == 3

        assert client.resolve_missing_records("pet-1", records) == []
        assert len(table.rows) == 3


class TestUsageUpload:
    """Test batched uploads."""

    def _pending(self, count):
        return [PetUsageRecord("pet-1", _usage(f"2024-01-{i % 28 + 1:02d}", total=i)) for i in range(count)]

    def test_batches(self):
        backend = Backend({("POST", "token_usage"): (201, None)})

        result = _client(backend).upload_usage_records(self._pending(250))

        posts = backend.calls("POST", "token_usage")
        assert [len(json.loads(p.content)) for p in posts] == [BATCH_SIZE, BATCH_SIZE, 50]
        assert result.processed == 250
        assert result.failed == 0
        assert result.success
        assert result.message == "Successfully synced 250 records"

    def test_failed_batch_counts_whole_batch(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 2:
                return httpx.Response(500, text="server error")
            return httpx.Response(201)

        backend = Backend({("POST", "token_usage"): handler})

        result = _client(backend).upload_usage_records(self._pending(150))

        assert result.processed == 100
        assert result.failed == 50
        assert not result.success
        assert result.errors == ["Batch sync failed with status 500: server error"]
        assert result.message == "Synced 100 records with 50 failures"

    def test_transport_error_counts_as_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = Backend({("POST", "token_usage"): handler})

        result = _client(backend).upload_usage_records(self._pending(3))

        assert result.failed == 3
        assert result.processed == 0

    def test_nothing_to_upload(self):
        backend = Backend()

        result = _client(backend).upload_usage_records([])

        assert result.message == "No records to sync"
        assert result.success
        assert backend.requests == []


class TestLastSyncDate:
    """Test last synced day lookup."""

    def test_never_synced(self):
        backend = Backend({("GET", "token_usage"): (200, [])})

        assert _client(backend).get_last_sync_date("pet-1") is None

    def test_latest_day(self):
        backend = Backend({("GET", "token_usage"): (200, [{"usage_date": "2024-01-10"}])})

        assert _client(backend).get_last_sync_date("pet-1") == "2024-01-10"
        params = backend.requests[0].url.params
        assert params["order"] == "usage_date.desc"
        assert params["limit"] == "1"

    def test_failure_is_not_none(self):
        backend = Backend({("GET", "token_usage"): (500, {})})

        with pytest.raises(SyncError):
            _client(backend).get_last_sync_date("pet-1")


class TestLeaderboardQueries:
    """Test the RPC and client-side aggregation paths."""

    def test_rpc_request(self):
        rows = [
            {"rank": 1, "pet_name": "Mochi", "animal_type": "cat", "total_tokens": 5000,
             "total_cost": 1.25, "survival_days": 19, "is_alive": True},
        ]
        backend = Backend({("POST", "rpc/get_leaderboard"): (200, rows)})
        query = LeaderboardQuery(period=Period.SEVEN_DAYS, sort_by=SortField.COST, limit=5)

        entries = _client(backend).query_leaderboard(query)

        assert json.loads(backend.requests[0].content) == {
            "date_filter": "7d", "sort_by": "cost", "limit_count": 5,
        }
        assert entries[0].pet_name == "Mochi"
        assert entries[0].total_cost == 1.25

    def test_rpc_failure_raises(self):
        backend = Backend()

        with pytest.raises(SyncError):
            _client(backend).query_leaderboard(LeaderboardQuery())

    def test_fallback_aggregation(self):
        pets = [
            {"id": "a", "pet_name": "Alpha", "animal_type": "cat",
             "birth_time": "2024-01-01T00:00:00Z", "death_time": None},
            {"id": "b", "pet_name": "Bravo", "animal_type": "dog",
             "birth_time": "2024-01-05T00:00:00Z", "death_time": "2024-01-08T12:00:00Z"},
            {"id": "c", "pet_name": "Charlie", "animal_type": "fox",
             "birth_time": "2024-01-10T00:00:00Z", "death_time": None},
        ]
        usage = [
            {"pet_id": "a", "total_tokens": 3000, "cost_usd": 0.75},
            {"pet_id": "b", "total_tokens": 3000, "cost_usd": 0.5},
            {"pet_id": "a", "total_tokens": 2000, "cost_usd": 0.25},
        ]
        backend = Backend({
            ("GET", "pet_records"): (200, pets),
            ("GET", "token_usage"): (200, usage),
        })
        query = LeaderboardQuery(period=Period.ALL, sort_by=SortField.TOKENS, limit=10)

        entries = _client(backend).query_leaderboard_fallback(query)

        assert [(e.rank, e.pet_name, e.total_tokens) for e in entries] == [
            (1, "Alpha", 5000), (2, "Bravo", 3000), (3, "Charlie", 0),
        ]
        assert entries[0].total_cost == 1.0
        assert entries[0].survival_days == 19
        assert entries[1].survival_days == 3
        assert entries[1].is_alive is False
        assert entries[2].is_alive is True
        assert "usage_date" not in backend.calls("GET", "token_usage")[0].url.params

    def test_fallback_accepts_postgres_fractions(self):
        pets = [
            {"id": "a", "pet_name": "Alpha", "animal_type": "cat",
             "birth_time": "2024-01-01T08:00:00.12345+00:00", "death_time": "2024-01-04T09:30:00.5+00:00"},
            {"id": "b", "pet_name": "Bravo", "animal_type": "dog",
             "birth_time": "2024-01-02T00:00:00.1+00:00", "death_time": None},
        ]
        backend = Backend({
            ("GET", "pet_records"): (200, pets),
            ("GET", "token_usage"): (200, [{"pet_id": "a", "total_tokens": 10, "cost_usd": 0.1}]),
        })

        entries = _client(backend).query_leaderboard_fallback(LeaderboardQuery(period=Period.ALL))

        assert [(e.pet_name, e.survival_days, e.is_alive) for e in entries] == [
            ("Alpha", 3, False), ("Bravo", 18, True),
        ]

    def test_fallback_date_filter(self):
        backend = Backend({
            ("GET", "pet_records"): (200, []),
            ("GET", "token_usage"): (200, []),
        })

        _client(backend).query_leaderboard_fallback(
            LeaderboardQuery(period=Period.TODAY), today=date(2024, 1, 20)
        )

        assert backend.calls("GET", "token_usage")[0].url.params["usage_date"] == "eq.2024-01-20"

    def test_fallback_truncates_after_ranking(self):
        pets = [
            {"id": str(i), "pet_name": f"Pet{i}", "animal_type": "cat",
             "birth_time": "2024-01-01T00:00:00Z"}
            for i in range(3)
        ]
        usage = [{"pet_id": "2", "total_tokens": 99, "cost_usd": 0}]
        backend = Backend({
            ("GET", "pet_records"): (200, pets),
            ("GET", "token_usage"): (200, usage),
        })

        entries = _client(backend).query_leaderboard_fallback(LeaderboardQuery(period=Period.ALL, limit=1))

        assert [e.pet_name for e in entries] == ["Pet2"]
