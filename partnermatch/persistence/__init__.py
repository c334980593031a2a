"""Persistence layer: one shared SQLite database accessed through aiosqlite."""

from partnermatch.persistence.database import Database
from partnermatch.persistence.query import (
    Condition,
    Query,
    all_of,
    any_of,
    eq,
    gt,
    in_,
    is_null,
    like,
)
from partnermatch.persistence.teams import Membership, Team, TeamStatus, TeamStore
from partnermatch.persistence.users import User, UserRole, UserStore

__all__ = [
    "Database",
    "Condition",
    "Query",
    "all_of",
    "any_of",
    "eq",
    "gt",
    "in_",
    "is_null",
    "like",
    "Membership",
    "Team",
    "TeamStatus",
    "TeamStore",
    "User",
    "UserRole",
    "UserStore",
]
