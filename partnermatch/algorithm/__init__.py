"""Similarity scoring and candidate ranking."""

from partnermatch.algorithm.ranking import (
    Candidate,
    CandidateRanker,
    MatchedUser,
    ScoredCandidate,
)
from partnermatch.algorithm.similarity import string_distance, tag_distance

__all__ = [
    "Candidate",
    "CandidateRanker",
    "MatchedUser",
    "ScoredCandidate",
    "string_distance",
    "tag_distance",
]
