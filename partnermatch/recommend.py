"""Read-through recommendation pages for a user."""

from typing import Optional

import structlog

from partnermatch.algorithm.ranking import CandidateRanker
from partnermatch.cache.recommendations import RecommendationCache, RecommendationPage
from partnermatch.core.clock import Clock, SystemClock
from partnermatch.core.errors import OperationResult

log = structlog.get_logger()


class RecommendationService:
    """Serves the first ranked page for a subject, cached for a short TTL."""

    def __init__(
        self,
        ranker: CandidateRanker,
        cache: RecommendationCache,
        page_size: int = 20,
        clock: Optional[Clock] = None,
    ):
        self.ranker = ranker
        self.cache = cache
        self.page_size = page_size
        self.clock = clock or SystemClock()

    async def compute_page(self, subject_id: int) -> OperationResult[RecommendationPage]:
        """Rank candidates for ``subject_id`` without touching the cache."""
        result = await self.ranker.match_users(subject_id, self.page_size)
        if not result.success:
            return OperationResult.fail(result.error)

        return OperationResult.ok(
            RecommendationPage(
                subject_id=subject_id,
                items=[match.to_dict() for match in result.value],
                page_size=self.page_size,
                generated_at=self.clock.now(),
            )
        )

    async def recommend(self, subject_id: int) -> OperationResult[RecommendationPage]:
        """Return the cached page, computing and caching it on a miss.

        A cache that cannot be read or written only costs a recomputation.
        """
        key = self.cache.key_for(subject_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return OperationResult.ok(cached)

        result = await self.compute_page(subject_id)
        if not result.success:
            return result

        if not await self.cache.set(key, result.value):
            log.warning("recommendation_not_cached", subject_id=subject_id)
        return result
