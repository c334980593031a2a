"""Tests for top-K candidate ranking."""

import random

import pytest
from unittest.mock import AsyncMock

from partnermatch.algorithm.ranking import Candidate, CandidateRanker
from partnermatch.algorithm.similarity import tag_distance
from partnermatch.core.errors import ErrorCode
from partnermatch.persistence.users import UserRole


# ============================================
# Pure Ranking Tests
# ============================================


class TestRank:
    """Tests for CandidateRanker.rank."""

    def test_closest_first(self):
        """go/rust subject ranks A (0) then B (1), dropping C (2)."""
        ranker = CandidateRanker()
        a = Candidate(id=1, tags=("go", "rust"))
        b = Candidate(id=2, tags=("go", "java"))
        c = Candidate(id=3, tags=("python",))

        result = ranker.rank(["go", "rust"], [c, b, a], limit=2)

        assert result.success
        assert [s.candidate for s in result.value] == [a, b]
        assert [s.score for s in result.value] == [0, 1]

    def test_ties_broken_by_id(self):
        ranker = CandidateRanker()
        pool = [
            Candidate(id=9, tags=("a",)),
            Candidate(id=4, tags=("a",)),
            Candidate(id=6, tags=("a",)),
        ]

        result = ranker.rank(["a"], pool, limit=2)

        assert [s.candidate.id for s in result.value] == [4, 6]

    def test_excludes_subject_and_untagged(self):
        ranker = CandidateRanker()
        pool = [
            Candidate(id=1, tags=("a",)),
            Candidate(id=2, tags=()),
            Candidate(id=3, tags=("b",)),
        ]

        result = ranker.rank(["a"], pool, limit=5, exclude_id=1)

        assert [s.candidate.id for s in result.value] == [3]

    def test_fewer_candidates_than_limit(self):
        ranker = CandidateRanker()
        result = ranker.rank(["a"], [Candidate(id=1, tags=("a",))], limit=20)
        assert len(result.value) == 1

    def test_empty_pool(self):
        result = CandidateRanker().rank(["a"], [], limit=3)
        assert result.success
        assert result.value == []

    @pytest.mark.parametrize("limit", [0, -1, 21])
    def test_invalid_limit(self, limit):
        result = CandidateRanker().rank(["a"], [Candidate(id=1, tags=("a",))], limit=limit)

        assert not result.success
        assert result.code == ErrorCode.INVALID_ARGUMENT

    def test_custom_max_limit(self):
        ranker = CandidateRanker(max_limit=5)
        assert ranker.rank(["a"], [], limit=5).success
        assert not ranker.rank(["a"], [], limit=6).success

    def test_matches_full_sort(self):
        """The bounded heap agrees with sorting every score."""
        rng = random.Random(42)
        vocab = ["go", "rust", "java", "python", "c", "sql"]
        subject = ["go", "sql", "rust"]
        pool = [
            Candidate(id=i, tags=tuple(rng.choice(vocab) for _ in range(rng.randint(1, 5))))
            for i in range(1, 300)
        ]

        result = CandidateRanker().rank(subject, pool, limit=20)

        expected = sorted(pool, key=lambda c: (tag_distance(subject, c.tags), c.id))[:20]
        assert [s.candidate.id for s in result.value] == [c.id for c in expected]


# ============================================
# Store-backed Matching Tests
# ============================================


class TestMatchUsers:
    """Tests for CandidateRanker.match_users."""

    @pytest.mark.asyncio
    async def test_ranked_order_restored(self, user_store, make_user):
        """Full records come back in ranked order, not storage order."""
        subject = await make_user(tags=["a", "b", "c"])
        far = await make_user(tags=["x"])
        exact = await make_user(tags=["a", "b", "c"])
        near = await make_user(tags=["a", "b"])

        ranker = CandidateRanker(user_store)
        result = await ranker.match_users(subject.id, limit=3)

        assert result.success
        assert [m.user.id for m in result.value] == [exact.id, near.id, far.id]
        assert [m.distance for m in result.value] == [0, 1, 3]

    @pytest.mark.asyncio
    async def test_subject_excluded(self, user_store, make_user):
        subject = await make_user(tags=["a"])
        await make_user(tags=["a"])

        result = await CandidateRanker(user_store).match_users(subject.id, limit=5)

        assert subject.id not in [m.user.id for m in result.value]

    @pytest.mark.asyncio
    async def test_users_without_tags_skipped(self, user_store, make_user):
        subject = await make_user(tags=["a"])
        await make_user(tags=None)
        await make_user(tags=[])
        tagged = await make_user(tags=["b"])

        result = await CandidateRanker(user_store).match_users(subject.id, limit=5)

        assert [m.user.id for m in result.value] == [tagged.id]

    @pytest.mark.asyncio
    async def test_deleted_users_skipped(self, user_store, make_user):
        subject = await make_user(tags=["a"])
        gone = await make_user(tags=["a"])
        admin = await make_user(role=UserRole.ADMIN)
        assert (await user_store.soft_delete_user(gone.id, admin.id)).value

        result = await CandidateRanker(user_store).match_users(subject.id, limit=5)

        assert result.value == []

    @pytest.mark.asyncio
    async def test_unknown_subject(self, user_store):
        result = await CandidateRanker(user_store).match_users(999, limit=5)

        assert result.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_subject_without_tags(self, user_store, make_user):
        subject = await make_user(tags=None)
        await make_user(tags=["a"])

        result = await CandidateRanker(user_store).match_users(subject.id, limit=5)

        assert result.success
        assert result.value == []

    @pytest.mark.asyncio
    async def test_invalid_limit_checked_first(self, user_store):
        result = await CandidateRanker(user_store).match_users(1, limit=0)
        assert result.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_user_removed_between_reads(self, user_store, make_user, mocker):
        subject = await make_user(tags=["a"])
        kept = await make_user(tags=["a"])
        await make_user(tags=["a"])

        mocker.patch.object(
            user_store,
            "get_users_by_ids",
            new=AsyncMock(return_value=[kept]),
        )

        result = await CandidateRanker(user_store).match_users(subject.id, limit=5)

        assert [m.user.id for m in result.value] == [kept.id]

    @pytest.mark.asyncio
    async def test_matched_user_to_dict(self, user_store, make_user):
        subject = await make_user(tags=["a"])
        other = await make_user(tags=["b"])

        result = await CandidateRanker(user_store).match_users(subject.id, limit=1)
        data = result.value[0].to_dict()

        assert data["id"] == other.id
        assert data["tags"] == ["b"]
        assert data["distance"] == 1
