"""Team and membership storage.

This module provides the persistence side of team matching:
- Team records with capacity, visibility and optional expiry
- Membership edges (user x team) with join time
- Filtered listing, counting and removal through ``Query``

Every mutating method accepts an optional open connection so several
steps can share one transaction (see ``Database.transaction``). Without
one, the method opens its own connection and commits immediately.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

import aiosqlite
import structlog

from partnermatch.persistence.query import Query, eq

if TYPE_CHECKING:
    from partnermatch.persistence.database import Database

log = structlog.get_logger()


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO text so stored timestamps compare correctly as strings."""
    return value.isoformat(timespec="microseconds") if value else None


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TeamStatus(IntEnum):
    """Team visibility.

    PUBLIC: Listed and joinable by anyone
    PRIVATE: Hidden from non-admins, not joinable
    SECRET: Listed, joinable with the team password
    """

    PUBLIC = 0
    PRIVATE = 1
    SECRET = 2

    @classmethod
    def from_value(cls, value: Optional[int]) -> Optional["TeamStatus"]:
        """Look up a status, returning None for unknown values."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


TEAM_COLUMNS = (
    "id, name, description, max_num, expire_time, owner_id, status, password, "
    "created_at, updated_at"
)

MEMBERSHIP_COLUMNS = "id, user_id, team_id, join_time"


@dataclass
class Team:
    """A bounded-capacity group of users.

    Attributes:
        id: Unique team identifier
        name: Team name
        description: Team description
        max_num: Capacity
        owner_id: User ID of the current owner
        status: Visibility
        password: Access secret (SECRET teams only)
        expire_time: Optional expiry
    """

    id: int
    name: str
    max_num: int
    owner_id: int
    description: str = ""
    status: TeamStatus = TeamStatus.PUBLIC
    password: Optional[str] = None
    expire_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def is_expired(self, now: datetime) -> bool:
        return self.expire_time is not None and self.expire_time <= now

    def to_dict(self, include_password: bool = False) -> dict:
        """Convert to dictionary for serialization.

        Args:
            include_password: Include the team password (default False)
        """
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "max_num": self.max_num,
            "owner_id": self.owner_id,
            "status": int(self.status),
            "expire_time": self.expire_time.isoformat() if self.expire_time else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_password:
            result["password"] = self.password
        return result


@dataclass
class Membership:
    """A user's membership in a team."""

    id: int
    user_id: int
    team_id: int
    join_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "team_id": self.team_id,
            "join_time": self.join_time.isoformat(),
        }


class TeamStore:
    """Persistent storage for teams and memberships."""

    def __init__(self, database: Optional["Database"] = None):
        """Initialize the team store.

        Args:
            database: Database instance (creates default if not provided)
        """
        from partnermatch.persistence.database import Database

        self.db = database or Database()

    async def _ensure_tables(self) -> None:
        await self.db.initialize()

    async def _write(
        self,
        sql: str,
        params,
        conn: Optional[aiosqlite.Connection],
    ) -> aiosqlite.Cursor:
        """Run a write on ``conn``, or on a fresh auto-committed connection."""
        if conn is not None:
            return await conn.execute(sql, params)

        await self._ensure_tables()
        async with self.db.get_connection() as own:
            cursor = await own.execute(sql, params)
            await own.commit()
            return cursor

    async def _read_all(
        self,
        sql: str,
        params,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> list:
        if conn is not None:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

        await self._ensure_tables()
        async with self.db.get_connection() as own:
            cursor = await own.execute(sql, params)
            return list(await cursor.fetchall())

    # ========== Teams ==========

    async def insert_team(
        self,
        team: Team,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Team:
        """Insert a team; the stored id is written back onto ``team``."""
        cursor = await self._write(
            """
            INSERT INTO teams (
                name, description, max_num, expire_time, owner_id,
                status, password, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                team.name,
                team.description,
                team.max_num,
                to_timestamp(team.expire_time),
                team.owner_id,
                int(team.status),
                team.password,
                to_timestamp(team.created_at),
                to_timestamp(team.updated_at),
            ),
            conn,
        )
        team.id = cursor.lastrowid
        log.debug("team_inserted", team_id=team.id, owner_id=team.owner_id)
        return team

    async def get_team(
        self,
        team_id: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Optional[Team]:
        """Get a team by ID."""
        rows = await self._read_all(
            f"SELECT {TEAM_COLUMNS} FROM teams WHERE id = ?", (team_id,), conn
        )
        return self._row_to_team(rows[0]) if rows else None

    async def list_teams(self, query: Optional[Query] = None) -> list[Team]:
        """List teams matching ``query``."""
        sql, params = (query or Query()).to_sql()
        rows = await self._read_all(f"SELECT {TEAM_COLUMNS} FROM teams{sql}", params)
        return [self._row_to_team(row) for row in rows]

    async def count_teams(
        self,
        query: Optional[Query] = None,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        sql, params = (query or Query()).where_sql()
        rows = await self._read_all(f"SELECT COUNT(*) FROM teams{sql}", params, conn)
        return rows[0][0]

    async def update_team(
        self,
        team_id: int,
        changes: dict,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """Update columns of a team by id.

        Args:
            team_id: Team ID
            changes: Column -> new value (name, description, expire_time,
                status, password, owner_id)
            conn: Optional open transaction

        Returns:
            Number of rows updated
        """
        allowed = {"name", "description", "expire_time", "status", "password", "owner_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown team columns: {sorted(unknown)}")

        updates = []
        params: list = []
        for column, value in sorted(changes.items()):
            if isinstance(value, datetime):
                value = to_timestamp(value)
            elif isinstance(value, TeamStatus):
                value = int(value)
            updates.append(f"{column} = ?")
            params.append(value)
        updates.append("updated_at = ?")
        params.append(to_timestamp(datetime.now()))
        params.append(team_id)

        cursor = await self._write(
            f"UPDATE teams SET {', '.join(updates)} WHERE id = ?", params, conn
        )
        return cursor.rowcount

    async def update_owner(
        self,
        team_id: int,
        new_owner_id: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """Reassign team ownership. Returns rows updated."""
        return await self.update_team(team_id, {"owner_id": new_owner_id}, conn)

    async def remove_team(
        self,
        team_id: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """Delete a team row. Memberships are removed separately."""
        cursor = await self._write("DELETE FROM teams WHERE id = ?", (team_id,), conn)
        return cursor.rowcount

    # ========== Memberships ==========

    async def insert_membership(
        self,
        user_id: int,
        team_id: int,
        join_time: datetime,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Membership:
        """Add a user to a team.

        Raises:
            ValueError: If the user is already a member
        """
        try:
            cursor = await self._write(
                """
                INSERT INTO user_teams (user_id, team_id, join_time, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, team_id, to_timestamp(join_time), to_timestamp(datetime.now())),
                conn,
            )
        except Exception as e:
            if "UNIQUE constraint failed" in str(e):
                raise ValueError(f"User {user_id} is already a member") from e
            raise

        return Membership(
            id=cursor.lastrowid,
            user_id=user_id,
            team_id=team_id,
            join_time=join_time,
        )

    async def get_membership(
        self,
        team_id: int,
        user_id: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> Optional[Membership]:
        rows = await self._read_all(
            f"SELECT {MEMBERSHIP_COLUMNS} FROM user_teams WHERE team_id = ? AND user_id = ?",
            (team_id, user_id),
            conn,
        )
        return self._row_to_membership(rows[0]) if rows else None

    async def list_memberships(
        self,
        query: Optional[Query] = None,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> list[Membership]:
        sql, params = (query or Query()).to_sql()
        rows = await self._read_all(
            f"SELECT {MEMBERSHIP_COLUMNS} FROM user_teams{sql}", params, conn
        )
        return [self._row_to_membership(row) for row in rows]

    async def count_memberships(
        self,
        query: Optional[Query] = None,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        sql, params = (query or Query()).where_sql()
        rows = await self._read_all(
            f"SELECT COUNT(*) FROM user_teams{sql}", params, conn
        )
        return rows[0][0]

    async def count_team_members(
        self,
        team_id: int,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        return await self.count_memberships(Query().where(eq("team_id", team_id)), conn)

    async def count_members_by_team(self, team_ids: list[int]) -> dict[int, int]:
        """Member count per team for a set of teams (absent teams map to 0)."""
        if not team_ids:
            return {}
        placeholders = ", ".join("?" for _ in team_ids)
        rows = await self._read_all(
            f"SELECT team_id, COUNT(*) FROM user_teams "
            f"WHERE team_id IN ({placeholders}) GROUP BY team_id",
            list(team_ids),
        )
        counts = {team_id: 0 for team_id in team_ids}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    async def remove_memberships(
        self,
        query: Query,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> int:
        """Delete memberships matching ``query``. Returns rows removed."""
        sql, params = query.where_sql()
        if not sql:
            raise ValueError("Refusing to remove memberships without a filter")
        cursor = await self._write(f"DELETE FROM user_teams{sql}", params, conn)
        return cursor.rowcount

    # ========== Helper Methods ==========

    def _row_to_team(self, row) -> Team:
        """Convert a database row to a Team object."""
        return Team(
            id=row[0],
            name=row[1],
            description=row[2] or "",
            max_num=row[3],
            expire_time=from_timestamp(row[4]),
            owner_id=row[5],
            status=TeamStatus(row[6]),
            password=row[7],
            created_at=from_timestamp(row[8]) or datetime.now(),
            updated_at=from_timestamp(row[9]) or datetime.now(),
        )

    def _row_to_membership(self, row) -> Membership:
        """Convert a database row to a Membership object."""
        return Membership(
            id=row[0],
            user_id=row[1],
            team_id=row[2],
            join_time=from_timestamp(row[3]) or datetime.now(),
        )
