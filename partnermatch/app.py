"""Wiring of stores, lock and cache services from configuration."""

from dataclasses import dataclass
from typing import Optional

import structlog

from partnermatch.algorithm.ranking import CandidateRanker
from partnermatch.cache.backends import CacheBackend, InMemoryCacheBackend, SQLiteCacheBackend
from partnermatch.cache.recommendations import RecommendationCache
from partnermatch.config import PartnerMatchConfig
from partnermatch.coordination.locks import InMemoryLockService, LockService, SQLiteLockService
from partnermatch.coordination.membership import MembershipCoordinator
from partnermatch.coordination.prewarm import PrewarmScheduler
from partnermatch.core.clock import Clock, SystemClock
from partnermatch.persistence.database import Database
from partnermatch.persistence.teams import TeamStore
from partnermatch.persistence.users import UserStore
from partnermatch.recommend import RecommendationService

log = structlog.get_logger()


@dataclass
class PartnerMatch:
    """Every collaborator of one process instance, built once."""

    config: PartnerMatchConfig
    database: Database
    users: UserStore
    teams: TeamStore
    locks: LockService
    cache: RecommendationCache
    ranker: CandidateRanker
    recommendations: RecommendationService
    coordinator: MembershipCoordinator
    prewarm: PrewarmScheduler

    async def initialize(self) -> None:
        await self.database.initialize()


def build_lock_service(config: PartnerMatchConfig, database: Database) -> LockService:
    settings = config.locks
    if settings.backend == "memory":
        return InMemoryLockService(
            watchdog_lease=settings.watchdog_lease_seconds,
            retry_interval=settings.retry_interval_seconds,
        )
    return SQLiteLockService(
        database,
        watchdog_lease=settings.watchdog_lease_seconds,
        retry_interval=settings.retry_interval_seconds,
    )


def build_cache_backend(config: PartnerMatchConfig, database: Database) -> CacheBackend:
    if config.cache.backend == "memory":
        return InMemoryCacheBackend()
    return SQLiteCacheBackend(database)


def build(config: Optional[PartnerMatchConfig] = None, clock: Optional[Clock] = None) -> PartnerMatch:
    """Construct a fully wired instance.

    Args:
        config: Configuration (loaded from the default locations if omitted)
        clock: Time source (wall clock if omitted)

    Returns:
        PartnerMatch with all collaborators sharing one database
    """
    config = config or PartnerMatchConfig.load()
    clock = clock or SystemClock()

    database = Database(config.db_path)
    users = UserStore(database)
    teams = TeamStore(database)
    locks = build_lock_service(config, database)
    cache = RecommendationCache(
        build_cache_backend(config, database),
        namespace=config.cache.namespace,
        default_ttl_ms=config.cache.ttl_ms,
    )
    ranker = CandidateRanker(users, max_limit=config.match.max_limit)
    recommendations = RecommendationService(
        ranker, cache, page_size=min(config.match.page_size, config.match.max_limit), clock=clock
    )
    coordinator = MembershipCoordinator(
        teams,
        users,
        locks,
        clock=clock,
        limits=config.teams,
        lock_config=config.locks,
    )
    prewarm = PrewarmScheduler(
        recommendations,
        cache,
        locks,
        watch_list=config.prewarm.watch_list,
        lock_name=config.prewarm.lock_name,
        trigger_time=config.prewarm.trigger_time,
        clock=clock,
    )

    log.debug(
        "partnermatch_built",
        db_path=str(config.db_path),
        lock_backend=config.locks.backend,
        cache_backend=config.cache.backend,
    )
    return PartnerMatch(
        config=config,
        database=database,
        users=users,
        teams=teams,
        locks=locks,
        cache=cache,
        ranker=ranker,
        recommendations=recommendations,
        coordinator=coordinator,
        prewarm=prewarm,
    )
