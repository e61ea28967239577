"""
Database Branching Service - template-based PostgreSQL branches
"""
import asyncio
import re
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

import asyncpg

from ...models.branch import BranchInfo, CleanupOutcome, CleanupResult, CleanupStatus


logger = logging.getLogger(__name__)


RESERVED_DATABASES = ("postgres", "template0", "template1")
PROTECTED_KEYWORDS = ("production", "staging")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_VALID_PREFIX = re.compile(r"^[a-z0-9_]*$")

_DATABASE_EXISTS_SQL = "SELECT 1 FROM pg_database WHERE datname = $1"

_TERMINATE_SESSIONS_SQL = """
    SELECT pg_terminate_backend(pid)
    FROM pg_stat_activity
    WHERE datname = $1
    AND pid <> pg_backend_pid()
"""

_COUNT_SESSIONS_SQL = """
    SELECT COUNT(*)
    FROM pg_stat_activity
    WHERE datname = $1
    AND pid <> pg_backend_pid()
"""

_LIST_BRANCHES_SQL = """
    SELECT
        d.datname AS name,
        pg_database_size(d.datname) AS size,
        COALESCE(s.connections, 0) AS connections
    FROM pg_database d
    LEFT JOIN (
        SELECT datname, COUNT(*) AS connections
        FROM pg_stat_activity
        WHERE datname IS NOT NULL
        GROUP BY datname
    ) s ON d.datname = s.datname
    WHERE d.datname LIKE $1
    AND d.datname <> ALL($2::text[])
    ORDER BY d.datname
"""


class BranchError(Exception):
    """Base exception for branch lifecycle failures"""
    pass


class SourceNotFound(BranchError):
    """Raised when the source database for a branch does not exist"""

    def __init__(self, source_database: str):
        self.source_database = source_database
        super().__init__(f"Source database {source_database} not found")


class BranchCreateFailed(BranchError):
    """Raised when the create sequence fails"""

    def __init__(self, branch_name: str, cause: BaseException):
        self.branch_name = branch_name
        self.cause = cause
        super().__init__(f"Failed to create database branch: {cause}")


class BranchDeleteFailed(BranchError):
    """Raised when the delete sequence fails"""

    def __init__(self, branch_name: str, cause: BaseException):
        self.branch_name = branch_name
        self.cause = cause
        super().__init__(f"Failed to delete database branch: {cause}")


class ConnectionUnavailable(BranchError):
    """Raised when no administrative connection can be obtained"""
    pass


def quote_ident(name: str) -> str:
    """Quote a PostgreSQL identifier"""
    return '"' + name.replace('"', '""') + '"'


class DatabaseBranchManager:
    """
    Manages the lifecycle of database branches on a PostgreSQL server.

    Branches are full copies of a template database created with
    ``CREATE DATABASE ... WITH TEMPLATE``. The engine catalog is the only
    record of which branches exist; nothing is cached here.

    Every public operation borrows one connection from the administrative
    pool and returns it before the operation completes.
    """

    def __init__(
        self,
        connection_url: str,
        prefix: str = "db_",
        max_connections: int = 10,
        idle_timeout: float = 30.0,
        connection_timeout: float = 2.0,
        settle_timeout: float = 5.0,
        settle_interval: float = 0.25,
    ):
        if not connection_url:
            raise ValueError("connection_url is required")
        if not _VALID_PREFIX.match(prefix):
            raise ValueError(f"Invalid branch prefix {prefix!r}: use lowercase letters, digits and underscore")
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")

        self.base_url = connection_url
        self.prefix = prefix
        self.max_connections = max_connections
        self.idle_timeout = idle_timeout
        self.connection_timeout = connection_timeout
        self.settle_timeout = settle_timeout
        self.settle_interval = settle_interval

        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock: Optional[asyncio.Lock] = None
        self._branch_locks: Dict[str, asyncio.Lock] = {}
        self._branch_lock_users: Dict[str, int] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, settings) -> "DatabaseBranchManager":
        """Build a manager from application settings"""
        if not settings.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")

        return cls(
            connection_url=settings.DATABASE_URL,
            prefix=settings.DB_PREFIX,
            max_connections=settings.DATABASE_MAX_CONNECTIONS,
            idle_timeout=settings.idle_timeout,
            connection_timeout=settings.connection_timeout,
            settle_timeout=settings.BRANCH_SETTLE_TIMEOUT_MS / 1000,
            settle_interval=settings.BRANCH_SETTLE_INTERVAL_MS / 1000,
        )

    # Pool lifecycle

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """Open the administrative pool without opening any connection"""
        await self._get_pool()

    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.base_url,
            min_size=0,
            max_size=self.max_connections,
            max_inactive_connection_lifetime=self.idle_timeout,
            timeout=self.connection_timeout,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if self._closed:
            raise ConnectionUnavailable("Branch manager is closed")
        if self._pool is not None:
            return self._pool

        if self._pool_lock is None:
            self._pool_lock = asyncio.Lock()

        async with self._pool_lock:
            if self._pool is None:
                try:
                    pool = await self._create_pool()
                except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                    raise ConnectionUnavailable(f"Could not open connection pool: {e}") from e
                if self._closed:
                    # close() ran while the pool was being opened
                    await pool.close()
                    raise ConnectionUnavailable("Branch manager is closed")
                self._pool = pool
            if self._closed:
                raise ConnectionUnavailable("Branch manager is closed")
        return self._pool

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow one connection for the duration of an operation"""
        pool = await self._get_pool()
        try:
            conn = await pool.acquire(timeout=self.connection_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionUnavailable(
                f"Timed out after {self.connection_timeout}s waiting for a database connection"
            ) from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise ConnectionUnavailable(f"Could not connect to database: {e}") from e

        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def _branch_lock(self, branch_name: str) -> AsyncIterator[None]:
        """Serialize create/delete on one identity; the lock is dropped once unused"""
        lock = self._branch_locks.get(branch_name)
        if lock is None:
            lock = self._branch_locks[branch_name] = asyncio.Lock()
        self._branch_lock_users[branch_name] = self._branch_lock_users.get(branch_name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._branch_lock_users[branch_name] -= 1
            if not self._branch_lock_users[branch_name]:
                del self._branch_lock_users[branch_name]
                del self._branch_locks[branch_name]

    async def close(self) -> None:
        """Close the connection pool"""
        if self._closed:
            return
        self._closed = True

        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info("Closed branch manager connection pool")

    # Naming

    def sanitize_name(self, name: str) -> str:
        """
        Turn a user supplied name into a database identifier.

        Every character outside ``[A-Za-z0-9_]`` is removed, the rest is
        lower-cased and the prefix is prepended unless already present.
        """
        sanitized = _INVALID_NAME_CHARS.sub("", name).lower()
        if sanitized.startswith(self.prefix):
            return sanitized
        return f"{self.prefix}{sanitized}"

    def get_connection_url(self, name: str) -> str:
        """Connection URL for a branch: the base URL with its database replaced"""
        branch_name = self.sanitize_name(name)
        base, sep, query = self.base_url.partition("?")
        scheme, marker, location = base.partition("://")
        if not marker:
            scheme, location = "", base
        if "/" in location:
            location = location.rpartition("/")[0]
        return f"{scheme}{marker}{location}/{branch_name}{sep}{query}"

    # Operations

    async def branch_exists(self, name: str) -> bool:
        """Check whether a branch exists in the catalog"""
        branch_name = self.sanitize_name(name)
        async with self._acquire() as conn:
            return await self._database_exists(conn, branch_name)

    async def create_branch(self, name: str, source_database: str) -> str:
        """
        Create a database branch from a source database

        Args:
            name: Branch name, sanitized before use
            source_database: Existing database to clone

        Returns:
            str: Connection URL of the branch

        Raises:
            SourceNotFound: The source database does not exist
            BranchCreateFailed: Any catalog or DDL failure while cloning
            ConnectionUnavailable: No connection could be obtained
        """
        branch_name = self.sanitize_name(name)

        async with self._branch_lock(branch_name):
            async with self._acquire() as conn:
                logger.info(f"Creating database branch: {branch_name} from {source_database}")
                try:
                    if not await self._database_exists(conn, source_database):
                        raise SourceNotFound(source_database)

                    if await self._database_exists(conn, branch_name):
                        logger.info(f"Branch {branch_name} already exists, returning existing connection")
                        return self.get_connection_url(branch_name)

                    await self._terminate_connections(conn, source_database)
                    await self._wait_for_sessions_to_close(conn, source_database)

                    await conn.execute(
                        f"CREATE DATABASE {quote_ident(branch_name)} WITH TEMPLATE {quote_ident(source_database)}"
                    )
                except SourceNotFound:
                    logger.error(f"Failed to create branch {branch_name}: source database {source_database} not found")
                    raise
                except Exception as e:
                    logger.error(f"Failed to create branch {branch_name}: {e}")
                    raise BranchCreateFailed(branch_name, e) from e

        logger.info(f"Created database branch: {branch_name}")
        return self.get_connection_url(branch_name)

    async def delete_branch(self, name: str) -> None:
        """
        Delete a database branch, terminating its sessions first

        Deleting a branch that does not exist is a no-op.
        """
        await self._delete_database(self.sanitize_name(name))

    async def _delete_database(self, branch_name: str) -> None:
        """Drop a database by its exact catalog name"""
        async with self._branch_lock(branch_name):
            async with self._acquire() as conn:
                logger.info(f"Deleting database branch: {branch_name}")
                try:
                    if not await self._database_exists(conn, branch_name):
                        logger.info(f"Branch {branch_name} doesn't exist, skipping deletion")
                        return

                    await self._terminate_connections(conn, branch_name)
                    await self._wait_for_sessions_to_close(conn, branch_name)

                    await conn.execute(f"DROP DATABASE {quote_ident(branch_name)}")
                except Exception as e:
                    logger.error(f"Failed to delete branch {branch_name}: {e}")
                    raise BranchDeleteFailed(branch_name, e) from e

        logger.info(f"Deleted database branch: {branch_name}")

    async def list_branches(self, pattern: Optional[str] = None) -> List[BranchInfo]:
        """
        List branches with their size and active connection count

        Args:
            pattern: SQL LIKE pattern, defaults to ``<prefix>%`` with the
                prefix matched literally
        """
        search_pattern = pattern or self.prefix.replace("_", r"\_") + "%"

        async with self._acquire() as conn:
            rows = await conn.fetch(_LIST_BRANCHES_SQL, search_pattern, list(RESERVED_DATABASES))

        return [
            BranchInfo(
                name=row["name"],
                size_bytes=int(row["size"] or 0),
                active_connections=int(row["connections"] or 0),
            )
            for row in rows
        ]

    def select_cleanup_candidates(
        self,
        branches: Iterable[BranchInfo],
        exclude: Iterable[str] = (),
    ) -> List[BranchInfo]:
        """Idle branches that are neither excluded nor look like production/staging"""
        excluded = set()
        for name in exclude:
            excluded.add(name)
            excluded.add(self.sanitize_name(name))

        return [
            branch for branch in branches
            if branch.active_connections == 0
            and branch.name not in excluded
            and not any(keyword in branch.name for keyword in PROTECTED_KEYWORDS)
        ]

    async def cleanup_branches(
        self,
        dry_run: bool = False,
        exclude: Iterable[str] = (),
    ) -> CleanupResult:
        """
        Delete idle branches

        Each candidate is deleted independently; a failure is recorded in
        the result and does not stop the remaining deletions.
        """
        branches = await self.list_branches()
        candidates = self.select_cleanup_candidates(branches, exclude)
        result = CleanupResult(dry_run=dry_run, candidates=candidates)

        logger.info(f"Found {len(candidates)} branches for cleanup")
        if dry_run:
            return result

        for branch in candidates:
            try:
                # Catalog names are not re-sanitized: db_Mixed must drop db_Mixed
                await self._delete_database(branch.name)
                result.outcomes.append(CleanupOutcome(branch.name, CleanupStatus.DELETED))
            except BranchError as e:
                logger.warning(f"Cleanup could not delete {branch.name}: {e}")
                result.outcomes.append(CleanupOutcome(branch.name, CleanupStatus.FAILED, str(e)))

        logger.info(f"Cleanup completed: {result.deleted} deleted, {result.failed} failed")
        return result

    # Engine helpers

    async def _database_exists(self, conn: asyncpg.Connection, db_name: str) -> bool:
        row = await conn.fetchrow(_DATABASE_EXISTS_SQL, db_name)
        return row is not None

    async def _terminate_connections(self, conn: asyncpg.Connection, db_name: str) -> None:
        """Terminate all other sessions on a database"""
        try:
            await conn.execute(_TERMINATE_SESSIONS_SQL, db_name)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            # May fail when there is nothing to terminate or we lack the privilege
            logger.warning(f"Could not terminate connections for {db_name}: {e}")

    async def _wait_for_sessions_to_close(self, conn: asyncpg.Connection, db_name: str) -> None:
        """Poll until no other session is attached to db_name or the settle timeout elapses"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settle_timeout

        while True:
            await asyncio.sleep(self.settle_interval)
            remaining = await conn.fetchval(_COUNT_SESSIONS_SQL, db_name)
            if not remaining:
                return
            if loop.time() >= deadline:
                logger.warning(
                    f"{remaining} sessions still open on {db_name} after {self.settle_timeout}s, proceeding"
                )
                return
