"""Test document storage with compare-and-swap saves."""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import asyncpg

from ..shared.errors import NotFoundError, StorageUnavailable, VersionConflict
from ..shared.models import Language, LocalizedText, Test, utc_now
from .config import settings

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)

SORTABLE_COLUMNS = {"created_at", "total_votes"}

SCHEMA = """
    CREATE TABLE IF NOT EXISTS tests (
        id TEXT PRIMARY KEY,
        version INTEGER NOT NULL DEFAULT 1,
        category TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        end_date TIMESTAMPTZ,
        total_votes INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        doc JSONB NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_tests_category_active ON tests (category, is_active);
    CREATE INDEX IF NOT EXISTS idx_tests_total_votes ON tests (total_votes DESC);
    CREATE INDEX IF NOT EXISTS idx_tests_sessions ON tests USING GIN ((doc -> 'vote_sessions'));
    CREATE INDEX IF NOT EXISTS idx_tests_voters ON tests USING GIN ((doc -> 'voters'));
    CREATE INDEX IF NOT EXISTS idx_tests_slug ON tests ((doc ->> 'slug'));
    CREATE TABLE IF NOT EXISTS test_categories (
        id TEXT PRIMARY KEY,
        slug TEXT,
        name JSONB NOT NULL
    );
"""


class PostgresTestRepository:
    """
    Async PostgreSQL store for test documents.

    Each test is one JSONB document plus a few denormalized columns for
    filtering. Saves are compare-and-swap on the ``version`` column, so a
    read-modify-write that lost a race raises VersionConflict instead of
    overwriting the winner.
    """

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                settings.postgres_dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=settings.POSTGRES_COMMAND_TIMEOUT
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
                logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @asynccontextmanager
    async def connection(self):
        """
        Context manager for pooled connections.

        Transient connection failures surface as StorageUnavailable so the
        caller can retry the whole read-modify-write.
        """
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except TRANSIENT_ERRORS as e:
            logger.error(f"PostgreSQL transient error: {e}")
            raise StorageUnavailable(str(e)) from e

    async def insert(self, test: Test) -> int:
        """Insert a new test document. Returns its version."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO tests (id, version, category, is_active, end_date,
                                   total_votes, created_at, doc)
                VALUES ($1, 1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                test.id, test.category, test.is_active, test.end_date,
                test.total_votes, test.created_at, json.dumps(test.to_dict())
            )
        logger.info(f"Test inserted: id={test.id}, options={len(test.options)}")
        return 1

    async def load(self, test_id: str) -> Tuple[Test, int]:
        """
        Load a test and the version it was read at.

        Raises:
            NotFoundError: If the test does not exist
        """
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT version, doc FROM tests WHERE id = $1", test_id
            )
        if row is None:
            raise NotFoundError(f"Test {test_id} not found", {"test_id": test_id})
        return Test.from_dict(json.loads(row["doc"])), row["version"]

    async def save(self, test: Test, expected_version: int) -> int:
        """
        Replace a test document if it is still at ``expected_version``.

        Returns:
            int: The new version

        Raises:
            VersionConflict: If another writer saved first
        """
        async with self.connection() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE tests
                SET version = version + 1,
                    category = $3,
                    is_active = $4,
                    end_date = $5,
                    total_votes = $6,
                    doc = $7::jsonb
                WHERE id = $1 AND version = $2
                RETURNING version
                """,
                test.id, expected_version, test.category, test.is_active,
                test.end_date, test.total_votes, json.dumps(test.to_dict())
            )
        if new_version is None:
            raise VersionConflict(f"Test {test.id} changed since version {expected_version}")
        return new_version

    async def delete(self, test_id: str) -> bool:
        """Delete a test. Returns False if it did not exist."""
        async with self.connection() as conn:
            status = await conn.execute("DELETE FROM tests WHERE id = $1", test_id)
        return status.endswith(" 1")

    async def list_tests(
        self,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        trend: Optional[bool] = None,
        popular: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Test], int]:
        """
        List tests with optional filters and pagination.

        Returns:
            Tuple of (tests on the page, total matching tests)
        """
        conditions = []
        params: list = []
        if category is not None:
            params.append(category)
            conditions.append(f"category = ${len(params)}")
        if is_active is not None:
            params.append(is_active)
            conditions.append(f"is_active = ${len(params)}")
        for flag, value in (("trend", trend), ("popular", popular)):
            if value is not None:
                params.append(value)
                conditions.append(f"COALESCE((doc ->> '{flag}')::boolean, FALSE) = ${len(params)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        column = sort_by if sort_by in SORTABLE_COLUMNS else "created_at"
        direction = "DESC" if descending else "ASC"

        async with self.connection() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM tests {where}", *params)
            rows = await conn.fetch(
                f"""
                SELECT doc FROM tests {where}
                ORDER BY {column} {direction}, id
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params, limit, (page - 1) * limit
            )
        return [Test.from_dict(json.loads(row["doc"])) for row in rows], total

    async def list_participant_tests(
        self, participant_id: str, test_id: Optional[str] = None
    ) -> List[Test]:
        """Tests holding at least one session owned by ``participant_id``."""
        query = "SELECT doc FROM tests WHERE doc -> 'vote_sessions' @> $1::jsonb"
        params: list = [json.dumps([{"participant_id": participant_id}])]
        if test_id is not None:
            query += " AND id = $2"
            params.append(test_id)
        async with self.connection() as conn:
            rows = await conn.fetch(query + " ORDER BY created_at DESC", *params)
        return [Test.from_dict(json.loads(row["doc"])) for row in rows]

    async def list_voter_tests(self, participant_id: str) -> List[Test]:
        """Tests holding at least one direct vote cast by ``participant_id``."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                "SELECT doc FROM tests WHERE doc -> 'voters' @> $1::jsonb",
                json.dumps([{"participant_id": participant_id}])
            )
        return [Test.from_dict(json.loads(row["doc"])) for row in rows]

    async def find_id_by_slug(self, slug: str) -> Optional[str]:
        """Id of the test with this slug, or None."""
        async with self.connection() as conn:
            return await conn.fetchval(
                "SELECT id FROM tests WHERE doc ->> 'slug' = $1 ORDER BY created_at LIMIT 1",
                slug
            )

    async def expire_tests(self, now: Optional[datetime] = None) -> int:
        """
        Deactivate every active test past its end date.

        Returns:
            int: Number of tests deactivated
        """
        async with self.connection() as conn:
            status = await conn.execute(
                """
                UPDATE tests
                SET is_active = FALSE,
                    version = version + 1,
                    doc = jsonb_set(doc, '{is_active}', 'false'::jsonb)
                WHERE is_active AND end_date IS NOT NULL AND end_date <= $1
                """,
                now or utc_now()
            )
        count = int(status.split()[-1])
        if count:
            logger.info(f"Expired {count} tests past their end date")
        return count

    async def get_category_name(self, category_id: str, language: Language) -> Optional[str]:
        """Localized display name of a category, or None if unknown."""
        async with self.connection() as conn:
            name = await conn.fetchval(
                "SELECT name FROM test_categories WHERE id = $1", category_id
            )
        if name is None:
            return None
        return LocalizedText.from_dict(json.loads(name)).resolve(language) or None

    async def check_health(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")


class InMemoryTestRepository:
    """
    Process-local store with the same contract as PostgresTestRepository.

    Documents are kept serialized so every load hands out an independent
    copy, and loads yield to the event loop so concurrent read-modify-write
    cycles interleave the way they do against a real database.
    """

    def __init__(self):
        self._docs: Dict[str, Tuple[int, str]] = {}
        self._categories: Dict[str, LocalizedText] = {}

    async def initialize(self):
        logger.info("In-memory test repository ready")

    def add_category(self, category_id: str, name: LocalizedText) -> None:
        self._categories[category_id] = name

    async def insert(self, test: Test) -> int:
        self._docs[test.id] = (1, json.dumps(test.to_dict()))
        logger.info(f"Test inserted: id={test.id}, options={len(test.options)}")
        return 1

    async def load(self, test_id: str) -> Tuple[Test, int]:
        entry = self._docs.get(test_id)
        await asyncio.sleep(0)
        if entry is None:
            raise NotFoundError(f"Test {test_id} not found", {"test_id": test_id})
        version, doc = entry
        return Test.from_dict(json.loads(doc)), version

    async def save(self, test: Test, expected_version: int) -> int:
        current = self._docs.get(test.id)
        if current is None or current[0] != expected_version:
            raise VersionConflict(f"Test {test.id} changed since version {expected_version}")
        new_version = expected_version + 1
        self._docs[test.id] = (new_version, json.dumps(test.to_dict()))
        return new_version

    async def delete(self, test_id: str) -> bool:
        return self._docs.pop(test_id, None) is not None

    def _all(self) -> List[Test]:
        return [Test.from_dict(json.loads(doc)) for _, doc in self._docs.values()]

    async def list_tests(
        self,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        trend: Optional[bool] = None,
        popular: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> Tuple[List[Test], int]:
        tests = [
            t for t in self._all()
            if (category is None or t.category == category)
            and (is_active is None or t.is_active == is_active)
            and (trend is None or t.trend == trend)
            and (popular is None or t.popular == popular)
        ]
        column = sort_by if sort_by in SORTABLE_COLUMNS else "created_at"
        tests.sort(key=lambda t: getattr(t, column), reverse=descending)
        start = (page - 1) * limit
        return tests[start:start + limit], len(tests)

    async def list_participant_tests(
        self, participant_id: str, test_id: Optional[str] = None
    ) -> List[Test]:
        return [
            t for t in self._all()
            if (test_id is None or t.id == test_id)
            and any(s.participant_id == participant_id for s in t.vote_sessions)
        ]

    async def list_voter_tests(self, participant_id: str) -> List[Test]:
        return [
            t for t in self._all()
            if any(v.participant_id == participant_id for v in t.voters)
        ]

    async def find_id_by_slug(self, slug: str) -> Optional[str]:
        for test in self._all():
            if test.slug == slug:
                return test.id
        return None

    async def expire_tests(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        count = 0
        for test_id, (version, doc) in list(self._docs.items()):
            test = Test.from_dict(json.loads(doc))
            if test.expire(now):
                self._docs[test_id] = (version + 1, json.dumps(test.to_dict()))
                count += 1
        if count:
            logger.info(f"Expired {count} tests past their end date")
        return count

    async def get_category_name(self, category_id: str, language: Language) -> Optional[str]:
        name = self._categories.get(category_id)
        if name is None:
            return None
        return name.resolve(language) or None

    async def check_health(self) -> bool:
        return True

    async def close(self):
        self._docs.clear()
