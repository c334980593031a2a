"""Key-value cache backends with per-entry TTL.

Values are JSON-serializable objects. Backends may raise on failure;
``RecommendationCache`` is the layer that turns failures into misses.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

import structlog

if TYPE_CHECKING:
    from partnermatch.persistence.database import Database

log = structlog.get_logger()


def _now_ms() -> int:
    return int(time.time() * 1000)


class CacheBackend(ABC):
    """Best-effort key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the live value for ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_ms`` milliseconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Drop ``key``. Returns True if it existed."""


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache. Every instance has its own contents."""

    def __init__(self):
        self._entries: dict[str, tuple[str, int]] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry and entry[1] > _now_ms():
            self.hits += 1
            return json.loads(entry[0])
        if entry:
            del self._entries[key]
        self.misses += 1
        return None

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        self._entries[key] = (json.dumps(value), _now_ms() + ttl_ms)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total * 100, 1) if total > 0 else 0.0,
        }

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0


class SQLiteCacheBackend(CacheBackend):
    """Cache kept in the shared database, visible to every instance."""

    def __init__(self, database: Optional["Database"] = None):
        from partnermatch.persistence.database import Database

        self.db = database or Database()

    async def get(self, key: str) -> Optional[Any]:
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()

        if not row or row[1] <= _now_ms():
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        await self.db.initialize()

        payload = json.dumps(value)
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, payload, _now_ms() + ttl_ms),
            )
            await conn.commit()

    async def delete(self, key: str) -> bool:
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await conn.commit()
            return cursor.rowcount > 0

    async def purge_expired(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", (_now_ms(),)
            )
            await conn.commit()
            removed = cursor.rowcount

        if removed:
            log.debug("cache_expired_purged", removed=removed)
        return removed
