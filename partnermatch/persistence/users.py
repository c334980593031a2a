"""User accounts and their interest tags.

Users are never physically removed: deletion sets ``is_deleted`` and every
read filters deleted rows out. Authorization decisions re-fetch the user
row by id instead of trusting a snapshot held by the caller.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Iterable, Optional

import structlog

from partnermatch.core.errors import (
    OperationResult,
    invalid_argument,
    not_found,
    unauthorized,
)
from partnermatch.persistence.query import Query, eq, like

if TYPE_CHECKING:
    from partnermatch.persistence.database import Database

log = structlog.get_logger()


class UserRole(IntEnum):
    """Account roles."""

    NORMAL = 0
    ADMIN = 1


USER_COLUMNS = (
    "id, username, user_account, avatar_url, gender, email, phone, tags, "
    "user_role, is_deleted, created_at, updated_at"
)

# Columns an owner or admin may change through update_user
UPDATABLE_FIELDS = {"username", "avatar_url", "gender", "email", "phone", "tags"}


def parse_tags(raw: Optional[str]) -> list[str]:
    """Decode a stored JSON tag array; blank or malformed values mean no tags."""
    if not raw or not raw.strip():
        return []
    try:
        tags = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("user_tags_malformed", raw=raw[:50])
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


@dataclass
class User:
    """A user account.

    Attributes:
        id: Unique user identifier
        user_account: Unique login account name
        username: Display name
        tags: Ordered interest tags
        role: Account role
        is_deleted: Soft-delete flag
    """

    id: int
    user_account: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    gender: Optional[int] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    role: UserRole = UserRole.NORMAL
    is_deleted: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "user_account": self.user_account,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "gender": self.gender,
            "email": self.email,
            "phone": self.phone,
            "tags": list(self.tags),
            "role": int(self.role),
            "created_at": self.created_at.isoformat(),
        }


class UserStore:
    """Persistent storage for user accounts."""

    def __init__(self, database: Optional["Database"] = None):
        """Initialize the user store.

        Args:
            database: Database instance (creates default if not provided)
        """
        from partnermatch.persistence.database import Database

        self.db = database or Database()

    async def create_user(
        self,
        user_account: str,
        username: Optional[str] = None,
        tags: Optional[list[str]] = None,
        role: UserRole = UserRole.NORMAL,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        """Create a new user.

        Args:
            user_account: Unique account name
            username: Display name
            tags: Ordered interest tags
            role: Account role
            email: Email address
            avatar_url: Avatar image URL

        Returns:
            Created User

        Raises:
            ValueError: If the account name is taken
        """
        await self.db.initialize()

        now = datetime.now()
        tags_json = json.dumps(tags) if tags is not None else None

        async with self.db.get_connection() as conn:
            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO users (
                        username, user_account, avatar_url, email, tags,
                        user_role, is_deleted, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        username,
                        user_account,
                        avatar_url,
                        email,
                        tags_json,
                        int(role),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                await conn.commit()
            except Exception as e:
                if "UNIQUE constraint failed" in str(e):
                    raise ValueError(f"Account {user_account} already exists") from e
                raise
            user_id = cursor.lastrowid

        log.info("user_created", user_id=user_id, user_account=user_account)
        return User(
            id=user_id,
            user_account=user_account,
            username=username,
            avatar_url=avatar_url,
            email=email,
            tags=list(tags or []),
            role=role,
            created_at=now,
            updated_at=now,
        )

    async def get_user(self, user_id: int) -> Optional[User]:
        """Get a live (not soft-deleted) user by ID."""
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ? AND is_deleted = 0",
                (user_id,),
            )
            row = await cursor.fetchone()

        return self._row_to_user(row) if row else None

    async def get_users_by_ids(self, user_ids: Iterable[int]) -> list[User]:
        """Fetch full records for a set of ids.

        The result follows storage order, not the order of ``user_ids``.
        """
        await self.db.initialize()

        ids = list(user_ids)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {USER_COLUMNS} FROM users "
                f"WHERE id IN ({placeholders}) AND is_deleted = 0",
                ids,
            )
            rows = await cursor.fetchall()

        return [self._row_to_user(row) for row in rows]

    async def list_tag_projections(self) -> list[tuple[int, list[str]]]:
        """Load only (id, tags) for every live user that has tags."""
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id, tags FROM users WHERE tags IS NOT NULL AND is_deleted = 0"
            )
            rows = await cursor.fetchall()

        return [(row[0], parse_tags(row[1])) for row in rows]

    async def list_users(self, limit: int = 20, offset: int = 0) -> list[User]:
        """List live users by id with pagination."""
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE is_deleted = 0 "
                "ORDER BY id LIMIT ? OFFSET ?",
                (limit, offset),
            )
            rows = await cursor.fetchall()

        return [self._row_to_user(row) for row in rows]

    async def search_users_by_tags(
        self, tag_names: list[str]
    ) -> OperationResult[list[User]]:
        """Find users carrying every one of ``tag_names``.

        Tags are matched in memory after decoding, so "java" never matches
        a user tagged "javascript".
        """
        if not tag_names:
            return OperationResult.fail(invalid_argument("At least one tag is required"))

        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE is_deleted = 0"
            )
            rows = await cursor.fetchall()

        wanted = set(tag_names)
        users = [self._row_to_user(row) for row in rows]
        return OperationResult.ok([u for u in users if wanted.issubset(u.tags)])

    async def search_users_by_username(
        self, text: Optional[str], requester_id: int
    ) -> OperationResult[list[User]]:
        """Admin-only substring search on display names.

        A blank ``text`` lists every live user.
        """
        requester = await self.get_user(requester_id)
        if requester is None:
            return OperationResult.fail(not_found(f"User {requester_id} not found"))
        if not requester.is_admin:
            return OperationResult.fail(unauthorized("Only admins may search users"))

        query = Query().where(eq("is_deleted", 0))
        if text and text.strip():
            query.where(like("username", text))
        where, params = query.order_by("id").to_sql()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(f"SELECT {USER_COLUMNS} FROM users{where}", params)
            rows = await cursor.fetchall()

        return OperationResult.ok([self._row_to_user(row) for row in rows])

    async def is_admin(self, user_id: int) -> bool:
        """Check the stored role of a user."""
        user = await self.get_user(user_id)
        return user is not None and user.is_admin

    async def update_user(
        self,
        user_id: int,
        changes: dict,
        requester_id: int,
    ) -> OperationResult[User]:
        """Update profile fields of a user.

        Only the user themself or an admin may update a profile.

        Args:
            user_id: User to update
            changes: Fields from UPDATABLE_FIELDS
            requester_id: Acting user

        Returns:
            Result carrying the updated User
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            return OperationResult.fail(
                invalid_argument(f"Fields cannot be updated: {sorted(unknown)}")
            )
        if not changes:
            return OperationResult.fail(invalid_argument("Nothing to update"))

        requester = await self.get_user(requester_id)
        if requester is None:
            return OperationResult.fail(not_found(f"User {requester_id} not found"))
        if requester.id != user_id and not requester.is_admin:
            return OperationResult.fail(
                unauthorized("Only the user or an admin may update a profile")
            )

        target = await self.get_user(user_id)
        if target is None:
            return OperationResult.fail(not_found(f"User {user_id} not found"))

        updates = []
        params: list = []
        for name, value in sorted(changes.items()):
            if name == "tags" and value is not None:
                value = json.dumps(list(value))
            updates.append(f"{name} = ?")
            params.append(value)
        updates.append("updated_at = ?")
        params.append(datetime.now().isoformat())
        params.append(user_id)

        async with self.db.get_connection() as conn:
            await conn.execute(
                f"UPDATE users SET {', '.join(updates)} WHERE id = ? AND is_deleted = 0",
                params,
            )
            await conn.commit()

        log.info("user_updated", user_id=user_id, requester_id=requester_id,
                 fields=sorted(changes))
        return OperationResult.ok(await self.get_user(user_id))

    async def soft_delete_user(
        self, user_id: int, requester_id: int
    ) -> OperationResult[bool]:
        """Mark a user deleted. Only admins may delete users.

        Returns:
            Result carrying whether a live user was affected
        """
        if user_id <= 0:
            return OperationResult.fail(invalid_argument(f"Invalid user id {user_id}"))

        requester = await self.get_user(requester_id)
        if requester is None:
            return OperationResult.fail(not_found(f"User {requester_id} not found"))
        if not requester.is_admin:
            return OperationResult.fail(unauthorized("Only admins may delete users"))

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "UPDATE users SET is_deleted = 1, updated_at = ? "
                "WHERE id = ? AND is_deleted = 0",
                (datetime.now().isoformat(), user_id),
            )
            await conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            log.info("user_soft_deleted", user_id=user_id, requester_id=requester_id)

        return OperationResult.ok(deleted)

    async def count_users(self) -> int:
        """Count live users."""
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM users WHERE is_deleted = 0")
            return (await cursor.fetchone())[0]

    def _row_to_user(self, row) -> User:
        """Convert a database row to a User object."""
        return User(
            id=row[0],
            username=row[1],
            user_account=row[2],
            avatar_url=row[3],
            gender=row[4],
            email=row[5],
            phone=row[6],
            tags=parse_tags(row[7]),
            role=UserRole(row[8]),
            is_deleted=bool(row[9]),
            created_at=datetime.fromisoformat(row[10]) if row[10] else datetime.now(),
            updated_at=datetime.fromisoformat(row[11]) if row[11] else datetime.now(),
        )
