"""Time-bounded cache of ranked recommendation pages.

A miss or a backend failure never fails the caller: read failures are
treated as misses and write failures are logged and reported as False.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from partnermatch.cache.backends import CacheBackend

log = structlog.get_logger()

DEFAULT_NAMESPACE = "partnermatch:user:recommend"
DEFAULT_TTL_MS = 30000


def make_key(namespace: str, subject_id: int) -> str:
    """Deterministic cache key for a subject, e.g. ``partnermatch:user:recommend:7``."""
    return f"{namespace}:{subject_id}"


@dataclass
class RecommendationPage:
    """First page of ranked candidates for one subject.

    Attributes:
        subject_id: User the page was computed for
        items: Serialized matched users, closest first
        page_size: Requested page size
        generated_at: When the ranking ran
    """

    subject_id: int
    items: list[dict] = field(default_factory=list)
    page_size: int = 20
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "items": self.items,
            "page_size": self.page_size,
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecommendationPage":
        return cls(
            subject_id=data["subject_id"],
            items=list(data.get("items", [])),
            page_size=data.get("page_size", 20),
            generated_at=datetime.fromisoformat(data["generated_at"]),
        )


class RecommendationCache:
    """Best-effort page cache over a ``CacheBackend``."""

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str = DEFAULT_NAMESPACE,
        default_ttl_ms: int = DEFAULT_TTL_MS,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl_ms = default_ttl_ms

    def key_for(self, subject_id: int) -> str:
        return make_key(self.namespace, subject_id)

    async def get(self, key: str) -> Optional[RecommendationPage]:
        """Return the cached page or None on miss or backend failure."""
        try:
            data = await self.backend.get(key)
        except Exception as e:
            log.warning("cache_get_failed", key=key, error=str(e))
            return None

        if data is None:
            log.debug("cache_miss", key=key)
            return None

        try:
            page = RecommendationPage.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            log.warning("cache_entry_unreadable", key=key, error=str(e))
            return None

        log.debug("cache_hit", key=key)
        return page

    async def set(
        self,
        key: str,
        page: RecommendationPage,
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """Store a page. Returns False (after logging) if the backend fails."""
        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        try:
            await self.backend.set(key, page.to_dict(), ttl)
        except Exception as e:
            log.error("cache_set_failed", key=key, error=str(e))
            return False

        log.debug("cache_set", key=key, ttl_ms=ttl, items=len(page.items))
        return True

    async def invalidate(self, subject_id: int) -> bool:
        key = self.key_for(subject_id)
        try:
            return await self.backend.delete(key)
        except Exception as e:
            log.warning("cache_invalidate_failed", key=key, error=str(e))
            return False
