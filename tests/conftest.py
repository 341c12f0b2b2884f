"""
Pytest Configuration and Fixtures for Noverna Core Tests
=========================================================

Purpose
-------
Centralized fixtures for the Noverna Core test suite: in-memory adapters
for unit tests and testcontainers-backed adapters for integration tests.

Responsibilities
----------------
- In-memory DatabaseService / CacheService stand-ins with call counters
- Storage fixtures wired to those stand-ins
- Temporary migration directories
- Testcontainers setup for PostgreSQL and Redis

Architecture Notes
------------------
- Unit tests use the fakes (fast, isolated, no I/O)
- Integration tests use testcontainers (real PostgreSQL/Redis)
- The fake database understands exactly the migration history statements
  the MigrationRunner issues; every other statement gets a queued or
  default response
"""

from __future__ import annotations

import fnmatch
import json
import os
from collections import Counter, defaultdict, deque
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Deque, Dict, Generator, List, Optional, Set, Tuple

# Must be set before noverna.core.config is imported
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from noverna.core.cache.service import CacheService
from noverna.core.database.service import DatabaseService
from noverna.core.logging.logger import get_logger
from noverna.storage.character import CharacterStorage
from noverna.storage.logs import LogStorage
from noverna.storage.penalty import PenaltyStorage
from noverna.storage.system_logs import SystemLogStorage
from noverna.storage.user import UserStorage

logger = get_logger(__name__)


# ============================================================================
# IN-MEMORY ADAPTERS (Unit Tests)
# ============================================================================


class FakeDatabase:
    """
    DatabaseService stand-in.

    Every call is counted in ``calls`` (per method) and recorded in
    ``statements``. Responses are queued per method with ``respond()``;
    without a queued response a method returns its default. Migration
    history reads and upserts operate on the ``history`` dict, and
    ``raw_query`` fails for any batch containing one of ``fail_markers``.
    """

    DEFAULTS: Dict[str, Tuple[Any, Optional[str]]] = {
        "single": (None, None),
        "query": ([], None),
        "insert": (1, None),
        "update": (1, None),
        "execute": (1, None),
    }

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.calls: Counter = Counter()
        self.statements: List[Tuple[str, str, Dict[str, Any]]] = []
        self.history: Dict[str, Dict[str, Any]] = {}
        self.raw_batches: List[str] = []
        self.fail_markers: Set[str] = set()
        self._responses: Dict[str, Deque[Tuple[Any, Optional[str]]]] = defaultdict(deque)

    def respond(self, method: str, *results: Tuple[Any, Optional[str]]) -> None:
        self._responses[method].extend(results)

    @property
    def round_trips(self) -> int:
        return sum(self.calls.values())

    def _record(self, method: str, query: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        self.calls[method] += 1
        bound = dict(params or {})
        self.statements.append((method, query, bound))
        return bound

    def _next(self, method: str) -> Tuple[Any, Optional[str]]:
        queue = self._responses[method]
        return queue.popleft() if queue else self.DEFAULTS[method]

    # -- readiness -----------------------------------------------------------

    def is_ready(self) -> bool:
        return self.ready

    async def await_ready(self, timeout: float) -> bool:
        return self.ready

    # -- queries -------------------------------------------------------------

    async def single(self, query: str, params: Optional[Dict[str, Any]] = None):
        bound = self._record("single", query, params)
        if "FROM migration_history" in query:
            row = self.history.get(bound["version"])
            return (dict(row) if row else None), None
        return self._next("single")

    async def query(self, query: str, params: Optional[Dict[str, Any]] = None):
        self._record("query", query, params)
        return self._next("query")

    async def insert(self, query: str, params: Optional[Dict[str, Any]] = None):
        self._record("insert", query, params)
        return self._next("insert")

    async def update(self, query: str, params: Optional[Dict[str, Any]] = None):
        self._record("update", query, params)
        return self._next("update")

    async def execute(self, query: str, params: Optional[Dict[str, Any]] = None):
        bound = self._record("execute", query, params)
        if "INSERT INTO migration_history" in query:
            existing = self.history.get(bound["version"])
            if existing and existing["success"]:
                return 0, None
            self.history[bound["version"]] = {**bound, "executed_at": None}
            return 1, None
        return self._next("execute")

    async def raw_query(self, sql: str):
        self.calls["raw_query"] += 1
        self.raw_batches.append(sql)
        for marker in self.fail_markers:
            if marker in sql:
                return None, f'syntax error at or near "{marker}"'
        return True, None


class FakeCache:
    """
    CacheService stand-in backed by a dict.

    Values are stored as their JSON round-trip, like the real adapter.
    """

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.calls: Counter = Counter()

    def is_ready(self) -> bool:
        return self.ready

    async def await_ready(self, timeout: float) -> bool:
        return self.ready

    async def get(self, key: str) -> Any:
        self.calls["get"] += 1
        return self.store.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        self.calls["set"] += 1
        self.store[key] = json.loads(json.dumps(value, default=str))
        self.ttls[key] = ttl_seconds
        return True

    async def delete(self, key: str) -> bool:
        self.calls["delete"] += 1
        self.store.pop(key, None)
        self.ttls.pop(key, None)
        return True

    async def delete_many(self, keys: List[str]) -> int:
        self.calls["delete_many"] += 1
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        self.calls["delete_pattern"] += 1
        matches = [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]
        for key in matches:
            del self.store[key]
        return len(matches)


# ============================================================================
# UNIT FIXTURES
# ============================================================================


@pytest.fixture
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def user_storage(fake_database, fake_cache) -> UserStorage:
    return UserStorage(fake_database, fake_cache)


@pytest.fixture
def character_storage(fake_database, fake_cache) -> CharacterStorage:
    return CharacterStorage(fake_database, fake_cache)


@pytest.fixture
def penalty_storage(fake_database, fake_cache) -> PenaltyStorage:
    return PenaltyStorage(fake_database, fake_cache)


@pytest.fixture
def log_storage(fake_database, fake_cache) -> LogStorage:
    return LogStorage(fake_database, fake_cache)


@pytest.fixture
def system_log_storage(fake_database, fake_cache) -> SystemLogStorage:
    return SystemLogStorage(fake_database, fake_cache)


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def write_migration(migrations_dir: Path) -> Callable[[str, str], Path]:
    """
    Write a migration file into the temporary migration directory.

    Usage:
        write_migration("001_create_users.sql", "CREATE TABLE users (id INT);")
    """

    def _write(filename: str, content: str) -> Path:
        path = migrations_dir / filename
        path.write_text(content, encoding="utf-8")
        return path

    return _write


# ============================================================================
# TESTCONTAINERS FIXTURES (Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL testcontainer for integration tests.

    Scope: session (container persists across all tests)
    """
    logger.info("Starting PostgreSQL testcontainer...")
    container = PostgresContainer(image="postgres:17-alpine", driver="asyncpg")
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"PostgreSQL testcontainer unavailable: {exc}")

    logger.info("PostgreSQL testcontainer started: %s", container.get_connection_url())
    yield container

    logger.info("Stopping PostgreSQL testcontainer...")
    container.stop()


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    """
    Start Redis testcontainer for integration tests.

    Scope: session (container persists across all tests)
    """
    logger.info("Starting Redis testcontainer...")
    container = RedisContainer(image="redis:7-alpine")
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"Redis testcontainer unavailable: {exc}")

    yield container

    logger.info("Stopping Redis testcontainer...")
    container.stop()


@pytest_asyncio.fixture
async def database_service(
    postgres_container: PostgresContainer,
) -> AsyncGenerator[DatabaseService, None]:
    """
    DatabaseService connected to the testcontainer with empty schemas.

    Scope: function (public and logs schemas are recreated per test)
    """
    service = DatabaseService(postgres_container.get_connection_url())
    await service.initialize()

    _, error = await service.raw_query(
        """
        DROP SCHEMA IF EXISTS logs CASCADE;
        DROP SCHEMA IF EXISTS public CASCADE;
        CREATE SCHEMA public;
        """
    )
    assert error is None, error

    yield service
    await service.shutdown()


@pytest_asyncio.fixture
async def cache_service(redis_container: RedisContainer) -> AsyncGenerator[CacheService, None]:
    """CacheService connected to the testcontainer with an empty keyspace."""
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    service = CacheService(f"redis://{host}:{port}/0")
    await service.initialize()
    await service.delete_pattern("*")

    yield service
    await service.shutdown()
