"""
Unit tests for PenaltyStorage.
"""

from datetime import datetime, timedelta, timezone

import pytest

from noverna.storage.base import StorageResult
from noverna.storage.penalty import default_expiry, naive_utc

ACTIVE_KEY = "storage:penalty:7:active"


class TestActivePenalty:
    @pytest.mark.parametrize("user_id", [None, 0])
    async def test_user_id_required(self, penalty_storage, fake_database, user_id):
        result = await penalty_storage.get_active_penalty_by_user_id(user_id)

        assert result == StorageResult(None, "user_id is required")
        assert fake_database.round_trips == 0

    async def test_cached_under_active_suffix(self, penalty_storage, fake_database, fake_cache):
        fake_database.respond("single", ({"id": 3, "user_id": 7, "reason": "cheating"}, None))

        penalty, error = await penalty_storage.get_active_penalty_by_user_id(7)

        assert error is None
        assert penalty["reason"] == "cheating"
        assert fake_cache.ttls[ACTIVE_KEY] == 600
        assert "pardoned = FALSE" in fake_database.statements[0][1]

    async def test_no_active_penalty_not_cached(self, penalty_storage, fake_cache):
        result = await penalty_storage.get_active_penalty_by_user_id(7)

        assert result == StorageResult(None, None)
        assert ACTIVE_KEY not in fake_cache.store

    async def test_history_is_uncached(self, penalty_storage, fake_database, fake_cache):
        fake_database.respond("query", ([{"id": 1}, {"id": 2}], None))

        rows, _ = await penalty_storage.get_penalties_by_user_id(7)

        assert len(rows) == 2
        assert sum(fake_cache.calls.values()) == 0


class TestAddPenalty:
    @pytest.mark.parametrize("data", [{"user_id": 7}, {"reason": "cheating"}, {}])
    async def test_invalid_data(self, penalty_storage, fake_database, data):
        data_out, error = await penalty_storage.add_penalty(data)

        assert data_out is None
        assert error == "Invalid penalty data: user_id and reason are required"
        assert fake_database.round_trips == 0

    async def test_defaults(self, penalty_storage, fake_database):
        fake_database.respond("insert", (3, None))
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        result = await penalty_storage.add_penalty({"user_id": 7, "reason": "cheating"})

        assert result == StorageResult(3, None)
        params = fake_database.statements[0][2]
        assert params["banned_by"] == "System"
        assert params["expires_at"].tzinfo is None
        assert timedelta(days=29) < params["expires_at"] - before <= timedelta(days=30, seconds=5)

    async def test_explicit_values_kept(self, penalty_storage, fake_database):
        expires = datetime(2030, 1, 1)

        await penalty_storage.add_penalty(
            {"user_id": 7, "reason": "cheating", "banned_by": "admin", "expires_at": expires}
        )

        params = fake_database.statements[0][2]
        assert params["banned_by"] == "admin"
        assert params["expires_at"] == expires

    @pytest.mark.parametrize(
        "expires_at",
        [
            datetime(2030, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))),
            datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc),
            "2030-01-01T14:00:00+02:00",
            "2030-01-01T12:00:00",
        ],
        ids=["aware_offset", "aware_utc", "iso_offset", "iso_naive"],
    )
    async def test_caller_expiry_normalized_to_naive_utc(self, penalty_storage, fake_database, expires_at):
        await penalty_storage.add_penalty({"user_id": 7, "reason": "cheating", "expires_at": expires_at})

        assert fake_database.statements[0][2]["expires_at"] == datetime(2030, 1, 1, 12, 0)

    async def test_unparseable_expiry_rejected_without_io(self, penalty_storage, fake_database):
        result = await penalty_storage.add_penalty({"user_id": 7, "reason": "cheating", "expires_at": "next week"})

        assert result == StorageResult(None, "Invalid expires_at, expected an ISO 8601 timestamp")
        assert fake_database.round_trips == 0

    async def test_invalidates_active_penalty(self, penalty_storage, fake_cache):
        fake_cache.store[ACTIVE_KEY] = {"id": 1}

        await penalty_storage.add_penalty({"user_id": 7, "reason": "cheating"})

        assert ACTIVE_KEY not in fake_cache.store

    async def test_insert_error_keeps_cache(self, penalty_storage, fake_database, fake_cache):
        fake_cache.store[ACTIVE_KEY] = {"id": 1}
        fake_database.respond("insert", (None, "foreign key violation"))

        result = await penalty_storage.add_penalty({"user_id": 7, "reason": "cheating"})

        assert result == StorageResult(None, "foreign key violation")
        assert ACTIVE_KEY in fake_cache.store


class TestPardonPenalty:
    async def test_pardon_success(self, penalty_storage, fake_database, fake_cache):
        fake_cache.store[ACTIVE_KEY] = {"id": 1}

        result = await penalty_storage.pardon_penalty(7, "appeal accepted", "admin")

        assert result == StorageResult(True, None)
        assert ACTIVE_KEY not in fake_cache.store
        assert fake_database.statements[0][2] == {
            "user_id": 7,
            "pardon_reason": "appeal accepted",
            "pardoned_by": "admin",
        }

    async def test_nothing_to_pardon(self, penalty_storage, fake_database):
        fake_database.respond("update", (0, None))

        result = await penalty_storage.pardon_penalty(7, "appeal", "admin")

        assert result == StorageResult(False, "No active penalty found to pardon")

    async def test_database_error(self, penalty_storage, fake_database):
        fake_database.respond("update", (None, "connection reset"))

        result = await penalty_storage.pardon_penalty(7, "appeal", "admin")

        assert result == StorageResult(False, "connection reset")


class TestDefaultExpiry:
    def test_thirty_days_from_now(self):
        now = datetime(2025, 1, 1, 12, 0)

        assert default_expiry(now) == datetime(2025, 1, 31, 12, 0)

    def test_aware_input_normalized_to_naive_utc(self):
        now = datetime(2025, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        assert default_expiry(now) == datetime(2025, 1, 31, 12, 0)


class TestNaiveUtc:
    def test_naive_value_unchanged(self):
        value = datetime(2030, 1, 1, 12, 0)

        assert naive_utc(value) is value

    def test_aware_value_shifted_to_utc(self):
        value = datetime(2030, 1, 1, 7, 0, tzinfo=timezone(timedelta(hours=-5)))

        assert naive_utc(value) == datetime(2030, 1, 1, 12, 0)
