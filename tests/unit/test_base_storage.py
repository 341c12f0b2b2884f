"""
Unit tests for BaseStorage.

Covers the cache-aside contract: cache hits skip the database, writes
update or invalidate the exact key, deletes always invalidate, and batch
reads preserve order.
"""

import pytest

from noverna.core.exceptions import StorageConfigurationError
from noverna.storage.base import (
    INSERT_FAILED,
    BaseStorage,
    StorageConfig,
    StorageResult,
    build_assignments,
)

SELECT_WIDGET = "SELECT * FROM widgets WHERE id = :id"


@pytest.fixture
def storage(fake_database, fake_cache):
    return BaseStorage(StorageConfig(name="widget", cache_prefix="storage:widget"), fake_database, fake_cache)


@pytest.fixture
def uncached_storage(fake_database, fake_cache):
    return BaseStorage(
        StorageConfig(name="widget", cache_prefix="storage:widget", enable_cache=False),
        fake_database,
        fake_cache,
    )


def _by_ids(ids):
    return "SELECT * FROM widgets WHERE id = ANY(:ids)", {"ids": list(ids)}


class TestStorageConfig:
    def test_defaults(self):
        config = StorageConfig(name="widget", cache_prefix="storage:widget")

        assert config.default_ttl == 3600
        assert config.enable_cache is True

    @pytest.mark.parametrize("name,prefix", [("", "storage:widget"), ("widget", "")])
    def test_missing_name_or_prefix_rejected(self, name, prefix):
        with pytest.raises(StorageConfigurationError):
            StorageConfig(name=name, cache_prefix=prefix)


class TestKeys:
    def test_cache_key_without_suffix(self, storage):
        assert storage.cache_key(42) == "storage:widget:42"

    def test_cache_key_with_suffix(self, storage):
        assert storage.cache_key(42, "full") == "storage:widget:42:full"

    def test_extract_identifier_prefers_id(self, storage):
        assert storage.extract_identifier({"id": 1, "identifier": "x", "license": "y"}) == 1
        assert storage.extract_identifier({"identifier": "x", "license": "y"}) == "x"
        assert storage.extract_identifier({"license": "y"}) == "y"
        assert storage.extract_identifier({}) is None


class TestGet:
    async def test_cached_value_served_without_database(self, storage, fake_database, fake_cache):
        # Arrange
        fake_cache.store["storage:widget:7"] = {"id": 7, "name": "cached"}

        # Act
        data, error = await storage.get(7, SELECT_WIDGET, {"id": 7})

        # Assert
        assert error is None
        assert data == {"id": 7, "name": "cached"}
        assert fake_database.round_trips == 0

    async def test_miss_loads_and_writes_through(self, storage, fake_database, fake_cache):
        fake_database.respond("single", ({"id": 7, "name": "db"}, None))

        data, error = await storage.get(7, SELECT_WIDGET, {"id": 7}, ttl=120)

        assert data == {"id": 7, "name": "db"}
        assert error is None
        assert fake_cache.store["storage:widget:7"] == {"id": 7, "name": "db"}
        assert fake_cache.ttls["storage:widget:7"] == 120

    async def test_default_ttl_used_when_none_given(self, storage, fake_database, fake_cache):
        fake_database.respond("single", ({"id": 7}, None))

        await storage.get(7, SELECT_WIDGET, {"id": 7})

        assert fake_cache.ttls["storage:widget:7"] == 3600

    async def test_force_db_bypasses_cache(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7, "name": "stale"}
        fake_database.respond("single", ({"id": 7, "name": "fresh"}, None))

        data, _ = await storage.get(7, SELECT_WIDGET, {"id": 7}, force_db=True)

        assert data["name"] == "fresh"
        assert fake_cache.store["storage:widget:7"]["name"] == "fresh"

    async def test_missing_row_is_not_an_error(self, storage, fake_cache):
        data, error = await storage.get(7, SELECT_WIDGET, {"id": 7})

        assert (data, error) == (None, None)
        assert "storage:widget:7" not in fake_cache.store

    async def test_database_error_leaves_cache_untouched(self, storage, fake_database, fake_cache):
        fake_database.respond("single", (None, "connection reset"))

        data, error = await storage.get(7, SELECT_WIDGET, {"id": 7})

        assert data is None
        assert error == "connection reset"
        assert fake_cache.calls["set"] == 0

    async def test_disabled_cache_always_hits_database(self, uncached_storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("single", ({"id": 7, "name": "db"}, None))

        data, _ = await uncached_storage.get(7, SELECT_WIDGET, {"id": 7})

        assert data["name"] == "db"
        assert fake_cache.calls["get"] == 0
        assert fake_cache.calls["set"] == 0


class TestGetMany:
    async def test_preserves_order_and_omits_missing(self, storage, fake_database, fake_cache):
        # Arrange
        fake_cache.store["storage:widget:3"] = {"id": 3, "name": "cached"}
        fake_database.respond("query", ([{"id": 1, "name": "one"}, {"id": 5, "name": "five"}], None))

        # Act
        rows, error = await storage.get_many([5, 3, 9, 1], _by_ids)

        # Assert
        assert error is None
        assert [row["id"] for row in rows] == [5, 3, 1]
        method, _, params = fake_database.statements[0]
        assert method == "query"
        assert params == {"ids": [5, 9, 1]}

    async def test_loaded_rows_are_cached(self, storage, fake_database, fake_cache):
        fake_database.respond("query", ([{"id": 1}, {"id": 2}], None))

        await storage.get_many([1, 2], _by_ids)

        assert "storage:widget:1" in fake_cache.store
        assert "storage:widget:2" in fake_cache.store

    async def test_string_and_int_identifiers_match(self, storage, fake_database):
        fake_database.respond("query", ([{"id": 42}], None))

        rows, _ = await storage.get_many(["42"], _by_ids)

        assert rows == [{"id": 42}]

    async def test_empty_input_skips_io(self, storage, fake_database, fake_cache):
        rows, error = await storage.get_many([], _by_ids)

        assert (rows, error) == ([], None)
        assert fake_database.round_trips == 0
        assert fake_cache.calls["get"] == 0

    async def test_all_cached_skips_database(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:1"] = {"id": 1}
        fake_cache.store["storage:widget:2"] = {"id": 2}

        rows, _ = await storage.get_many([2, 1], _by_ids)

        assert rows == [{"id": 2}, {"id": 1}]
        assert fake_database.round_trips == 0

    async def test_database_error_returns_empty_list(self, storage, fake_database):
        fake_database.respond("query", ([], "timeout"))

        rows, error = await storage.get_many([1], _by_ids)

        assert rows == []
        assert error == "timeout"


class TestCreate:
    async def test_create_then_get_is_served_from_cache(self, storage, fake_database, fake_cache):
        # Arrange
        fake_database.respond("insert", (11, None))
        await storage.create(
            "INSERT INTO widgets (name) VALUES (:name) RETURNING id",
            {"name": "gear"},
            cache_data={"name": "gear"},
        )
        trips_after_create = fake_database.round_trips

        # Act
        data, error = await storage.get(11, SELECT_WIDGET, {"id": 11})

        # Assert
        assert error is None
        assert data == {"name": "gear", "id": 11}
        assert fake_database.round_trips == trips_after_create

    async def test_cache_seeded_at_explicit_identifier(self, storage, fake_database, fake_cache):
        fake_database.respond("insert", (11, None))

        await storage.create("INSERT ...", {}, cache_data={"license": "abc"}, identifier="abc")

        assert fake_cache.store["storage:widget:abc"] == {"license": "abc", "id": 11}

    async def test_no_cache_data_means_no_cache_write(self, storage, fake_database, fake_cache):
        fake_database.respond("insert", (11, None))

        result = await storage.create("INSERT ...", {})

        assert result == StorageResult(11, None)
        assert fake_cache.calls["set"] == 0

    async def test_missing_id_is_insert_failure(self, storage, fake_database):
        fake_database.respond("insert", (None, None))

        data, error = await storage.create("INSERT ...", {}, cache_data={"name": "x"})

        assert data is None
        assert error == INSERT_FAILED

    async def test_database_error_is_returned(self, storage, fake_database, fake_cache):
        fake_database.respond("insert", (None, 'duplicate key value violates unique constraint "users_license_key"'))

        data, error = await storage.create("INSERT ...", {}, cache_data={"name": "x"})

        assert data is None
        assert "duplicate key" in error
        assert fake_cache.store == {}


class TestUpdate:
    async def test_invalidate_only_removes_entry(self, storage, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7, "name": "old"}

        data, error = await storage.update(
            7,
            "UPDATE widgets SET name = :name WHERE id = :id",
            {"id": 7, "name": "new"},
            new_data={"id": 7, "name": "new"},
            invalidate_only=True,
        )

        assert (data, error) == (1, None)
        assert "storage:widget:7" not in fake_cache.store

    async def test_new_data_writes_through(self, storage, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7, "name": "old"}

        await storage.update(7, "UPDATE ...", {"id": 7}, new_data={"id": 7, "name": "new"})

        assert fake_cache.store["storage:widget:7"] == {"id": 7, "name": "new"}

    async def test_without_new_data_entry_is_removed(self, storage, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}

        await storage.update(7, "UPDATE ...", {"id": 7})

        assert "storage:widget:7" not in fake_cache.store

    async def test_suffix_targets_that_view_only(self, storage, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_cache.store["storage:widget:7:full"] = {"id": 7, "parts": []}

        await storage.update(7, "UPDATE ...", {"id": 7}, suffix="full")

        assert "storage:widget:7" in fake_cache.store
        assert "storage:widget:7:full" not in fake_cache.store

    async def test_database_error_keeps_cache(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("update", (0, "deadlock detected"))

        data, error = await storage.update(7, "UPDATE ...", {"id": 7}, new_data={"id": 7, "x": 1})

        assert data is None
        assert error == "deadlock detected"
        assert fake_cache.store["storage:widget:7"] == {"id": 7}

    async def test_crash_between_write_and_invalidate_leaves_stale_entry(
        self, storage, fake_database, fake_cache, mocker
    ):
        """The database write lands first; a failure before the cache step keeps the old entry until TTL."""
        # Arrange
        fake_cache.store["storage:widget:7"] = {"id": 7, "name": "old"}
        mocker.patch.object(fake_cache, "delete", side_effect=RuntimeError("process killed"))

        # Act
        with pytest.raises(RuntimeError):
            await storage.update(7, "UPDATE widgets SET name = :name WHERE id = :id", {"id": 7, "name": "new"})

        # Assert
        assert fake_database.calls["update"] == 1
        assert fake_cache.store["storage:widget:7"] == {"id": 7, "name": "old"}


class TestDelete:
    async def test_entry_removed_when_row_existed(self, storage, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}

        data, error = await storage.delete(7, "DELETE FROM widgets WHERE id = :id", {"id": 7})

        assert (data, error) == (1, None)
        assert "storage:widget:7" not in fake_cache.store

    async def test_entry_removed_when_no_row_matched(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("execute", (0, None))

        data, _ = await storage.delete(7, "DELETE ...", {"id": 7})

        assert data == 0
        assert "storage:widget:7" not in fake_cache.store

    async def test_entry_removed_even_on_database_error(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("execute", (0, "foreign key violation"))

        data, error = await storage.delete(7, "DELETE ...", {"id": 7})

        assert data is None
        assert error == "foreign key violation"
        assert "storage:widget:7" not in fake_cache.store


class TestWriteReturning:
    async def test_returns_rows_and_drops_entry(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("query", ([{"owner_id": 3}], None))

        rows, error = await storage.write_returning(
            7, "UPDATE widgets SET name = :name WHERE id = :id RETURNING owner_id", {"id": 7, "name": "x"}
        )

        assert (rows, error) == ([{"owner_id": 3}], None)
        assert "storage:widget:7" not in fake_cache.store

    async def test_database_error_keeps_cache(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:7"] = {"id": 7}
        fake_database.respond("query", ([], "deadlock detected"))

        rows, error = await storage.write_returning(7, "UPDATE ... RETURNING owner_id", {"id": 7})

        assert (rows, error) == (None, "deadlock detected")
        assert "storage:widget:7" in fake_cache.store


class TestCacheHelpers:
    async def test_invalidate_cache_many(self, storage, fake_cache):
        fake_cache.store.update({"storage:widget:1": 1, "storage:widget:2": 2, "storage:widget:3": 3})

        removed = await storage.invalidate_cache_many([1, 3])

        assert removed == 2
        assert list(fake_cache.store) == ["storage:widget:2"]

    async def test_invalidate_all_sweeps_prefix_only(self, storage, fake_cache):
        fake_cache.store.update({"storage:widget:1": 1, "storage:widget:1:full": 1, "storage:other:1": 1})

        removed = await storage.invalidate_all()

        assert removed == 2
        assert list(fake_cache.store) == ["storage:other:1"]

    async def test_set_and_get_cache_only(self, storage, fake_database):
        assert await storage.set_cache(5, {"id": 5}, suffix="full") is True

        assert await storage.get_cache_only(5, "full") == {"id": 5}
        assert fake_database.round_trips == 0

    async def test_helpers_with_cache_disabled(self, uncached_storage, fake_cache):
        assert await uncached_storage.invalidate_cache(1) is True
        assert await uncached_storage.invalidate_cache_many([1, 2]) == 0
        assert await uncached_storage.invalidate_all() == 0
        assert await uncached_storage.set_cache(1, {"id": 1}) is False
        assert await uncached_storage.get_cache_only(1) is None
        assert sum(fake_cache.calls.values()) == 0


class TestCustomQuery:
    async def test_result_cached_under_full_key(self, storage, fake_database, fake_cache):
        fake_database.respond("query", ([{"id": 1}], None))

        await storage.custom_query("storage:widget:all", "SELECT * FROM widgets", ttl=30)
        data, _ = await storage.custom_query("storage:widget:all", "SELECT * FROM widgets", ttl=30)

        assert data == [{"id": 1}]
        assert fake_database.calls["query"] == 1
        assert fake_cache.ttls["storage:widget:all"] == 30

    async def test_empty_result_not_cached(self, storage, fake_cache):
        await storage.custom_query("storage:widget:all", "SELECT * FROM widgets")

        assert "storage:widget:all" not in fake_cache.store

    async def test_none_key_bypasses_cache(self, storage, fake_database, fake_cache):
        fake_database.respond("single", ({"id": 1}, None))

        data, _ = await storage.custom_query(None, "SELECT 1", single=True)

        assert data == {"id": 1}
        assert sum(fake_cache.calls.values()) == 0

    async def test_skip_cache_bypasses_cache(self, storage, fake_database, fake_cache):
        fake_cache.store["storage:widget:all"] = [{"id": "stale"}]
        fake_database.respond("query", ([{"id": 1}], None))

        data, _ = await storage.custom_query("storage:widget:all", "SELECT 1", skip_cache=True)

        assert data == [{"id": 1}]
        assert fake_cache.store["storage:widget:all"] == [{"id": "stale"}]

    async def test_database_error(self, storage, fake_database):
        fake_database.respond("query", ([], "relation does not exist"))

        data, error = await storage.custom_query("storage:widget:all", "SELECT 1")

        assert data is None
        assert error == "relation does not exist"


class TestReadiness:
    async def test_ready_when_both_adapters_ready(self, storage):
        assert await storage.await_ready(0.1) is True

    @pytest.mark.parametrize("database_ready,cache_ready", [(False, True), (True, False), (False, False)])
    async def test_not_ready_when_an_adapter_is_down(
        self, storage, fake_database, fake_cache, database_ready, cache_ready
    ):
        fake_database.ready = database_ready
        fake_cache.ready = cache_ready

        assert await storage.await_ready(0.1) is False

    def test_health(self, storage, fake_cache):
        fake_cache.ready = False

        health = storage.health()

        assert health == {
            "name": "widget",
            "cache_prefix": "storage:widget",
            "cache_enabled": True,
            "database_ready": True,
            "cache_ready": False,
        }


class TestBuildAssignments:
    def test_excluded_fields_dropped(self):
        assignments, params = build_assignments({"id": 1, "name": "x", "height": 2}, ("id",))

        assert assignments == ["name = :name", "height = :height"]
        assert params == {"name": "x", "height": 2}

    @pytest.mark.parametrize("column", ["name; DROP TABLE users", "Name", "1abc", "a-b"])
    def test_unsafe_column_names_rejected(self, column):
        with pytest.raises(ValueError, match="Invalid field name"):
            build_assignments({column: 1}, ())
