"""Tests for the daily pre-warm job."""

import asyncio
from datetime import datetime, time

import pytest
from unittest.mock import AsyncMock

from partnermatch.algorithm.ranking import CandidateRanker
from partnermatch.cache.backends import InMemoryCacheBackend
from partnermatch.cache.recommendations import RecommendationCache
from partnermatch.coordination.prewarm import (
    DEFAULT_LOCK_NAME,
    PrewarmScheduler,
    parse_trigger_time,
    seconds_until,
)
from partnermatch.recommend import RecommendationService


@pytest.fixture
def cache():
    return RecommendationCache(InMemoryCacheBackend())


@pytest.fixture
def service(user_store, cache, clock):
    return RecommendationService(CandidateRanker(user_store), cache, page_size=5, clock=clock)


def make_scheduler(service, cache, locks, watch_list, clock, **kwargs):
    return PrewarmScheduler(service, cache, locks, watch_list=watch_list, clock=clock, **kwargs)


class TestTrigger:
    """Tests for trigger time arithmetic."""

    def test_parse_trigger_time(self):
        assert parse_trigger_time("00:00") == time(0, 0)
        assert parse_trigger_time("23:45") == time(23, 45)

    def test_later_today(self):
        now = datetime(2024, 1, 1, 22, 0, 0)
        assert seconds_until(now, time(23, 0)) == 3600

    def test_tomorrow_when_passed(self):
        now = datetime(2024, 1, 1, 12, 0, 0)
        assert seconds_until(now, time(0, 0)) == 12 * 3600

    def test_exactly_now_waits_a_day(self):
        now = datetime(2024, 1, 1, 0, 0, 0)
        assert seconds_until(now, time(0, 0)) == 24 * 3600


class TestRunOnce:
    """Tests for PrewarmScheduler.run_once."""

    @pytest.mark.asyncio
    async def test_refreshes_watch_list(self, service, cache, locks, clock, make_user):
        a = await make_user(tags=["go"])
        b = await make_user(tags=["go", "rust"])
        scheduler = make_scheduler(service, cache, locks, [a.id, b.id], clock)

        report = await scheduler.run_once()

        assert report.ran
        assert report.refreshed == [a.id, b.id]
        assert report.failed == {}
        page = await cache.get(cache.key_for(a.id))
        assert page.subject_id == a.id
        assert [item["id"] for item in page.items] == [b.id]
        assert page.generated_at == clock.now()

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, service, cache, locks, clock, make_user):
        a = await make_user(tags=["go"])
        scheduler = make_scheduler(service, cache, locks, [a.id], clock)
        other_instance = await locks.acquire(DEFAULT_LOCK_NAME, lease=5)

        report = await scheduler.run_once()

        assert not report.ran
        assert await cache.get(cache.key_for(a.id)) is None
        await locks.release(other_instance)

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_work_once(
        self, service, cache, locks, clock, make_user, mocker
    ):
        a = await make_user(tags=["go"])
        original = service.compute_page

        async def slow_compute(subject_id):
            await asyncio.sleep(0.2)
            return await original(subject_id)

        compute = mocker.patch.object(
            service, "compute_page", new=AsyncMock(side_effect=slow_compute)
        )
        first = make_scheduler(service, cache, locks, [a.id], clock)
        second = make_scheduler(service, cache, locks, [a.id], clock)

        reports = await asyncio.gather(first.run_once(), second.run_once())

        assert sorted(r.ran for r in reports) == [False, True]
        assert compute.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_subject_does_not_stop_others(
        self, service, cache, locks, clock, make_user
    ):
        a = await make_user(tags=["go"])
        scheduler = make_scheduler(service, cache, locks, [404, a.id], clock)

        report = await scheduler.run_once()

        assert report.refreshed == [a.id]
        assert 404 in report.failed

    @pytest.mark.asyncio
    async def test_compute_exception_is_recorded(
        self, service, cache, locks, clock, make_user, mocker
    ):
        a = await make_user(tags=["go"])
        mocker.patch.object(
            service, "compute_page", new=AsyncMock(side_effect=RuntimeError("store down"))
        )
        scheduler = make_scheduler(service, cache, locks, [a.id], clock)

        report = await scheduler.run_once()

        assert report.failed == {a.id: "store down"}
        assert not await locks.is_held(DEFAULT_LOCK_NAME)

    @pytest.mark.asyncio
    async def test_cache_write_failure_is_recorded(
        self, service, cache, locks, clock, make_user, mocker
    ):
        a = await make_user(tags=["go"])
        b = await make_user(tags=["rust"])
        mocker.patch.object(cache, "set", new=AsyncMock(side_effect=[False, True]))
        scheduler = make_scheduler(service, cache, locks, [a.id, b.id], clock)

        report = await scheduler.run_once()

        assert report.failed == {a.id: "cache write failed"}
        assert report.refreshed == [b.id]

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, service, cache, locks, clock, make_user):
        a = await make_user(tags=["go"])
        scheduler = make_scheduler(service, cache, locks, [a.id], clock)

        await scheduler.run_once()

        assert not await locks.is_held(DEFAULT_LOCK_NAME)

    @pytest.mark.asyncio
    async def test_report_to_dict(self, service, cache, locks, clock):
        scheduler = make_scheduler(service, cache, locks, [404], clock)

        data = (await scheduler.run_once()).to_dict()

        assert data["ran"] is True
        assert "404" in data["failed"]
        assert data["started_at"] == clock.now().isoformat()

    @pytest.mark.asyncio
    async def test_separate_instances_run_once(self, db, clock, make_user, mocker):
        from partnermatch.coordination.locks import SQLiteLockService
        from partnermatch.persistence.database import Database
        from partnermatch.persistence.users import UserStore

        a = await make_user(tags=["go"])
        schedulers, computes = [], []
        for _ in range(2):
            database = Database(db.db_path)
            cache = RecommendationCache(InMemoryCacheBackend())
            service = RecommendationService(
                CandidateRanker(UserStore(database)), cache, page_size=5, clock=clock
            )
            original = service.compute_page

            async def slow_compute(subject_id, original=original):
                await asyncio.sleep(0.2)
                return await original(subject_id)

            computes.append(
                mocker.patch.object(
                    service, "compute_page", new=AsyncMock(side_effect=slow_compute)
                )
            )
            locks = SQLiteLockService(database, retry_interval=0.01)
            schedulers.append(make_scheduler(service, cache, locks, [a.id], clock))

        reports = await asyncio.gather(*(s.run_once() for s in schedulers))

        assert sorted(r.ran for r in reports) == [False, True]
        assert sum(c.await_count for c in computes) == 1
        assert not await schedulers[0].locks.is_held(DEFAULT_LOCK_NAME)


class TestSchedulerLoop:
    """Tests for start/stop of the daily trigger."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, service, cache, locks, clock):
        scheduler = make_scheduler(service, cache, locks, [], clock)

        scheduler.start()
        assert scheduler.running

        scheduler.stop()
        await asyncio.sleep(0.01)
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_fires_at_trigger(self, service, cache, locks, clock, mocker):
        scheduler = make_scheduler(service, cache, locks, [], clock)
        mocker.patch.object(scheduler, "seconds_until_next_run", return_value=0.01)
        run = mocker.patch.object(scheduler, "run_once", new=AsyncMock())

        scheduler.start()
        await asyncio.sleep(0.1)
        scheduler.stop()

        assert run.await_count >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, service, cache, locks, clock, mocker):
        scheduler = make_scheduler(service, cache, locks, [], clock)
        mocker.patch.object(scheduler, "seconds_until_next_run", return_value=0.01)
        run = mocker.patch.object(
            scheduler, "run_once", new=AsyncMock(side_effect=RuntimeError("boom"))
        )

        scheduler.start()
        await asyncio.sleep(0.1)

        assert scheduler.running
        assert run.await_count >= 2
        scheduler.stop()

    def test_trigger_from_clock(self, service, cache, locks, clock):
        scheduler = make_scheduler(service, cache, locks, [], clock, trigger_time="13:30")

        assert scheduler.seconds_until_next_run() == 90 * 60
