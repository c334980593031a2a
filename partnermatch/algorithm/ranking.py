"""Top-K candidate ranking by tag edit distance."""

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

import structlog

from partnermatch.algorithm.similarity import tag_distance
from partnermatch.core.errors import OperationResult, invalid_argument, not_found

if TYPE_CHECKING:
    from partnermatch.persistence.users import User, UserStore

log = structlog.get_logger()

DEFAULT_MAX_LIMIT = 20


@dataclass(frozen=True)
class Candidate:
    """Minimal projection used for scoring."""

    id: int
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate with its distance to the subject (lower is closer)."""

    candidate: Candidate
    score: int


@dataclass
class MatchedUser:
    """A full user record in ranked position."""

    user: "User"
    distance: int

    def to_dict(self) -> dict:
        data = self.user.to_dict()
        data["distance"] = self.distance
        return data


class CandidateRanker:
    """Scores candidates against a subject's tags and keeps the closest K.

    Only a heap of ``limit`` entries is held while scanning, so memory
    stays bounded however large the candidate pool is.
    """

    def __init__(
        self,
        user_store: Optional["UserStore"] = None,
        max_limit: int = DEFAULT_MAX_LIMIT,
    ):
        """Initialize the ranker.

        Args:
            user_store: Store used by match_users (pure ranking works without it)
            max_limit: Largest accepted ``limit``
        """
        self.user_store = user_store
        self.max_limit = max_limit

    def _check_limit(self, limit: int) -> Optional[OperationResult]:
        if limit <= 0 or limit > self.max_limit:
            return OperationResult.fail(
                invalid_argument(f"limit must be between 1 and {self.max_limit}, got {limit}")
            )
        return None

    def rank(
        self,
        subject_tags: list[str],
        candidates: Iterable[Candidate],
        limit: int,
        exclude_id: Optional[int] = None,
    ) -> OperationResult[list[ScoredCandidate]]:
        """Order candidates by ascending distance to ``subject_tags``.

        Ties are broken by candidate id. The subject itself (``exclude_id``)
        and candidates without tags are skipped.

        Args:
            subject_tags: Tags of the user being matched
            candidates: Pool to rank
            limit: Number of results wanted (1..max_limit)
            exclude_id: Id of the subject, if it appears in the pool

        Returns:
            Result carrying at most ``limit`` scored candidates
        """
        failure = self._check_limit(limit)
        if failure:
            return failure

        # Max-heap on (score, id) via negation; the root is the worst kept entry
        heap: list[tuple[int, int, int, Candidate]] = []
        scanned = 0
        for candidate in candidates:
            if candidate.id == exclude_id or not candidate.tags:
                continue
            scanned += 1
            score = tag_distance(subject_tags, candidate.tags)
            entry = (-score, -candidate.id, -scanned, candidate)
            if len(heap) < limit:
                heapq.heappush(heap, entry)
            elif entry > heap[0]:
                heapq.heapreplace(heap, entry)

        ranked = sorted(
            (ScoredCandidate(candidate=c, score=-neg_score) for neg_score, _, _, c in heap),
            key=lambda s: (s.score, s.candidate.id),
        )

        log.debug("candidates_ranked", scanned=scanned, kept=len(ranked), limit=limit)
        return OperationResult.ok(ranked)

    async def match_users(
        self,
        subject_id: int,
        limit: int,
    ) -> OperationResult[list[MatchedUser]]:
        """Find the users whose tags are closest to the subject's.

        Scores over the (id, tags) projection only, then loads full
        records for the winners and restores the ranked order.

        Args:
            subject_id: User to match for
            limit: Number of matches wanted

        Returns:
            Result carrying matched users, closest first
        """
        failure = self._check_limit(limit)
        if failure:
            return failure
        if self.user_store is None:
            raise RuntimeError("match_users requires a user store")

        subject = await self.user_store.get_user(subject_id)
        if subject is None:
            return OperationResult.fail(not_found(f"User {subject_id} not found"))
        if not subject.tags:
            log.info("match_skipped_no_tags", subject_id=subject_id)
            return OperationResult.ok([])

        projections = await self.user_store.list_tag_projections()
        result = self.rank(
            subject.tags,
            (Candidate(id=user_id, tags=tuple(tags)) for user_id, tags in projections),
            limit,
            exclude_id=subject.id,
        )
        if not result.success:
            return result

        ranked = result.value
        users_by_id = {
            u.id: u
            for u in await self.user_store.get_users_by_ids(s.candidate.id for s in ranked)
        }

        matches = []
        for scored in ranked:
            user = users_by_id.get(scored.candidate.id)
            if user is None:
                # Deleted between the two reads
                continue
            matches.append(MatchedUser(user=user, distance=scored.score))

        log.info(
            "users_matched",
            subject_id=subject_id,
            pool=len(projections),
            returned=len(matches),
        )
        return OperationResult.ok(matches)
