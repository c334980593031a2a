"""Cross-instance coordination: locks, membership changes, scheduled pre-warming."""

from partnermatch.coordination.locks import (
    InMemoryLockService,
    LockHandle,
    LockService,
    SQLiteLockService,
)
from partnermatch.coordination.membership import (
    MembershipCoordinator,
    QuitOutcome,
    TeamCreate,
    TeamQuery,
    TeamUpdate,
    TeamView,
)
from partnermatch.coordination.prewarm import PrewarmReport, PrewarmScheduler

__all__ = [
    "InMemoryLockService",
    "LockHandle",
    "LockService",
    "SQLiteLockService",
    "MembershipCoordinator",
    "QuitOutcome",
    "TeamCreate",
    "TeamQuery",
    "TeamUpdate",
    "TeamView",
    "PrewarmReport",
    "PrewarmScheduler",
]
