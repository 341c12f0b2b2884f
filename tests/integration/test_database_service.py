"""
Integration Tests for DatabaseService
=====================================

Purpose
-------
Test the async PostgreSQL adapter against a real PostgreSQL using
testcontainers.

Test Coverage
-------------
- Connection and readiness
- The ``(result, error)`` contract of every query method
- Raw multi-statement batches and their rollback on failure
- Error strings instead of exceptions

Testing Strategy
----------------
- Integration tests (uses testcontainers for real PostgreSQL)
- Each test starts from empty ``public`` and ``logs`` schemas
"""

from datetime import date

import pytest
import pytest_asyncio

from noverna.core.database.service import NOT_INITIALIZED, DatabaseService


# ============================================================================
# CONNECTION TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestDatabaseConnection:
    """Test connection lifecycle and readiness."""

    async def test_ready_after_initialize(self, database_service):
        # Assert
        assert database_service.is_ready() is True
        assert await database_service.await_ready(timeout=1.0) is True
        assert await database_service.health_check() is True

    async def test_initialize_is_idempotent(self, database_service):
        # Act
        await database_service.initialize()

        # Assert
        assert database_service.is_ready() is True

    async def test_shutdown_then_queries_report_not_initialized(self, postgres_container):
        # Arrange
        service = DatabaseService(postgres_container.get_connection_url())
        await service.initialize()

        # Act
        await service.shutdown()
        row, error = await service.single("SELECT 1")

        # Assert
        assert row is None
        assert error == NOT_INITIALIZED
        assert service.is_ready() is False


# ============================================================================
# QUERY CONTRACT TESTS
# ============================================================================


@pytest_asyncio.fixture
async def widgets(database_service):
    _, error = await database_service.raw_query(
        """
        CREATE TABLE widgets (
            id SERIAL PRIMARY KEY,
            name VARCHAR(50) UNIQUE NOT NULL,
            released DATE
        );
        """
    )
    assert error is None
    return database_service


@pytest.mark.integration
@pytest.mark.database
class TestQueryContract:
    """Every query method returns (result, error) and never raises."""

    async def test_insert_returns_generated_id(self, widgets):
        # Act
        new_id, error = await widgets.insert(
            "INSERT INTO widgets (name, released) VALUES (:name, :released) RETURNING id",
            {"name": "gear", "released": date(2024, 5, 1)},
        )

        # Assert
        assert error is None
        assert new_id == 1

    async def test_single_and_query(self, widgets):
        # Arrange
        for name in ("gear", "spring"):
            await widgets.insert("INSERT INTO widgets (name) VALUES (:name) RETURNING id", {"name": name})

        # Act
        row, row_error = await widgets.single("SELECT * FROM widgets WHERE name = :name", {"name": "gear"})
        missing, missing_error = await widgets.single("SELECT * FROM widgets WHERE name = :name", {"name": "x"})
        rows, rows_error = await widgets.query("SELECT name FROM widgets ORDER BY id")

        # Assert
        assert (row_error, missing_error, rows_error) == (None, None, None)
        assert row["name"] == "gear"
        assert missing is None
        assert rows == [{"name": "gear"}, {"name": "spring"}]

    async def test_update_and_execute_return_row_counts(self, widgets):
        # Arrange
        for name in ("gear", "spring", "bolt"):
            await widgets.insert("INSERT INTO widgets (name) VALUES (:name) RETURNING id", {"name": name})

        # Act
        updated, update_error = await widgets.update(
            "UPDATE widgets SET released = :day WHERE name <> :name", {"day": date(2025, 1, 1), "name": "bolt"}
        )
        deleted, delete_error = await widgets.execute("DELETE FROM widgets WHERE name = :name", {"name": "none"})

        # Assert
        assert (updated, update_error) == (2, None)
        assert (deleted, delete_error) == (0, None)

    async def test_constraint_violation_is_returned_as_error(self, widgets):
        # Arrange
        await widgets.insert("INSERT INTO widgets (name) VALUES ('gear') RETURNING id")

        # Act
        new_id, error = await widgets.insert("INSERT INTO widgets (name) VALUES ('gear') RETURNING id")

        # Assert
        assert new_id is None
        assert "duplicate key" in error

    async def test_unknown_table_is_returned_as_error(self, database_service):
        # Act
        rows, error = await database_service.query("SELECT * FROM nowhere")

        # Assert
        assert rows == []
        assert "nowhere" in error


# ============================================================================
# RAW BATCH TESTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.database
class TestRawQuery:
    """Multi-statement batches as used by the migration runner."""

    async def test_multi_statement_batch(self, database_service):
        # Act
        ok, error = await database_service.raw_query(
            """
            CREATE TYPE mood AS ENUM ('happy', 'sad');
            CREATE TABLE moods (id SERIAL PRIMARY KEY, value mood NOT NULL);
            INSERT INTO moods (value) VALUES ('happy');
            """
        )
        row, _ = await database_service.single("SELECT value FROM moods")

        # Assert
        assert (ok, error) == (True, None)
        assert row == {"value": "happy"}

    async def test_failing_batch_rolls_back_entirely(self, database_service):
        # Act
        ok, error = await database_service.raw_query(
            """
            CREATE TABLE half_done (id INT);
            SELEC broken;
            """
        )
        rows, _ = await database_service.query(
            "SELECT tablename FROM pg_tables WHERE tablename = :name", {"name": "half_done"}
        )

        # Assert
        assert ok is None
        assert "syntax error" in error
        assert rows == []
