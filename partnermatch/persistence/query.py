"""Composable WHERE clauses for the stores.

Conditions are built only from column names chosen in code; values are
always bound as parameters.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

_COLUMN = re.compile(r"^[a-z_][a-z0-9_]*$")


def _column(name: str) -> str:
    if not _COLUMN.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    return name


@dataclass(frozen=True)
class Condition:
    """A SQL boolean expression with its bound parameters."""

    sql: str
    params: tuple = ()


def eq(column: str, value: Any) -> Condition:
    return Condition(f"{_column(column)} = ?", (value,))


def gt(column: str, value: Any) -> Condition:
    return Condition(f"{_column(column)} > ?", (value,))


def is_null(column: str) -> Condition:
    return Condition(f"{_column(column)} IS NULL")


def like(column: str, text: str) -> Condition:
    """Substring match, with LIKE wildcards in ``text`` taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return Condition(f"{_column(column)} LIKE ? ESCAPE '\\'", (f"%{escaped}%",))


def in_(column: str, values: Iterable[Any]) -> Condition:
    values = tuple(values)
    if not values:
        # Nothing can match an empty set
        return Condition("0 = 1")
    placeholders = ", ".join("?" for _ in values)
    return Condition(f"{_column(column)} IN ({placeholders})", values)


def any_of(*conditions: Condition) -> Condition:
    return _combine(" OR ", conditions)


def all_of(*conditions: Condition) -> Condition:
    return _combine(" AND ", conditions)


def _combine(joiner: str, conditions: tuple) -> Condition:
    if not conditions:
        raise ValueError("At least one condition is required")
    if len(conditions) == 1:
        return conditions[0]
    sql = joiner.join(f"({c.sql})" for c in conditions)
    params: tuple = ()
    for c in conditions:
        params += c.params
    return Condition(f"({sql})", params)


@dataclass
class Query:
    """Conjunctive filter with optional ordering and limit.

    Example:
        Query().where(eq("team_id", 3)).order_by("join_time", "id").limit(2)
    """

    conditions: list[Condition] = field(default_factory=list)
    ordering: list[str] = field(default_factory=list)
    max_rows: Optional[int] = None

    def where(self, condition: Condition) -> "Query":
        self.conditions.append(condition)
        return self

    def order_by(self, *columns: str) -> "Query":
        """Order ascending by ``columns``; prefix a column with '-' for descending."""
        for col in columns:
            if col.startswith("-"):
                self.ordering.append(f"{_column(col[1:])} DESC")
            else:
                self.ordering.append(f"{_column(col)} ASC")
        return self

    def limit(self, n: int) -> "Query":
        self.max_rows = n
        return self

    def where_sql(self) -> tuple[str, list]:
        """Render only the WHERE part (empty string when unfiltered)."""
        if not self.conditions:
            return "", []
        combined = all_of(*self.conditions)
        return f" WHERE {combined.sql}", list(combined.params)

    def to_sql(self) -> tuple[str, list]:
        """Render WHERE, ORDER BY and LIMIT."""
        sql, params = self.where_sql()
        if self.ordering:
            sql += " ORDER BY " + ", ".join(self.ordering)
        if self.max_rows is not None:
            sql += " LIMIT ?"
            params.append(self.max_rows)
        return sql, params
