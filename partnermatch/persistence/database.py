"""SQLite database setup for PartnerMatch.

One database file is shared by every process instance; it holds users,
teams, memberships, lock leases and cached recommendation pages.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite
import structlog

log = structlog.get_logger()

# Current schema version for migration tracking
SCHEMA_VERSION = 1

# Seconds a connection waits on another writer before failing
BUSY_TIMEOUT = 30.0


class Database:
    """Manages SQLite database connection and schema."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database manager.

        Args:
            db_path: Path to the database file. Defaults to ~/.partnermatch/partnermatch.db
        """
        if db_path is None:
            db_path = Path.home() / ".partnermatch" / "partnermatch.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    async def _get_schema_version(self, db: aiosqlite.Connection) -> int:
        """Get current schema version from database."""
        async with db.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def _set_schema_version(self, db: aiosqlite.Connection, version: int):
        """Set schema version in database."""
        await db.execute(f"PRAGMA user_version = {version}")

    async def initialize(self):
        """Create database schema if it doesn't exist."""
        if self._initialized:
            return

        async with self.get_connection() as db:
            # WAL lets readers proceed while one instance writes
            await db.execute("PRAGMA journal_mode = WAL")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT,
                    user_account TEXT UNIQUE NOT NULL,
                    avatar_url TEXT,
                    gender INTEGER,
                    email TEXT,
                    phone TEXT,
                    tags TEXT,
                    user_role INTEGER NOT NULL DEFAULT 0,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS teams (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    max_num INTEGER NOT NULL,
                    expire_time TIMESTAMP,
                    owner_id INTEGER NOT NULL,
                    status INTEGER NOT NULL DEFAULT 0,
                    password TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    CHECK (max_num > 0 AND max_num <= 20)
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS user_teams (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    team_id INTEGER NOT NULL,
                    join_time TIMESTAMP NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, team_id)
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS locks (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
            """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at INTEGER NOT NULL
                )
            """
            )

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_teams_owner ON teams(owner_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_teams_expire ON teams(expire_time)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_teams_team ON user_teams(team_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_teams_user ON user_teams(user_id)"
            )

            await self._set_schema_version(db, SCHEMA_VERSION)

            await db.commit()

        self._initialized = True
        log.info("database_initialized", path=str(self.db_path))

    def get_connection(self):
        """Get an async database connection context manager."""
        return aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT)

    @asynccontextmanager
    async def transaction(self, immediate: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements as one atomic unit.

        Commits when the block exits normally and rolls back on any
        exception, which is re-raised.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE)

        Yields:
            Connection with an open transaction
        """
        # Autocommit mode so BEGIN/COMMIT below are the only transaction control
        async with aiosqlite.connect(
            self.db_path, timeout=BUSY_TIMEOUT, isolation_level=None
        ) as conn:
            await conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
