"""Tests for folding aggregate rows into rolling-window reports."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from linkpulse.aggregators.stats_rollup import (
    PERIODS,
    StatsRollup,
    add_months,
    days_between,
    hours_between,
    months_between,
    rank,
)
from linkpulse.core.exceptions import StatsUnavailableError
from linkpulse.core.timeutil import hour_bucket, utcnow
from linkpulse.models.visit import BROWSERS, OPERATING_SYSTEMS, VisitAggregate
from linkpulse.schemas.events import VisitEvent
from linkpulse.services.stats_cache import (
    MemoryStatsCache,
    NullStatsCache,
    RedisStatsCache,
    stats_cache_key,
)
from tests.factories import CHROME_WINDOWS, add_aggregate

NOW = datetime(2024, 5, 15, 12, 30)
HOUR = datetime(2024, 5, 15, 12)


def names(items) -> list[str]:
    return [item.name for item in items]


class TestCalendarHelpers:
    def test_hours_truncate_toward_zero(self):
        assert hours_between(NOW, HOUR) == 0
        assert hours_between(NOW, HOUR - timedelta(hours=3)) == 3
        assert hours_between(HOUR - timedelta(minutes=90), NOW) == -2

    def test_days_truncate_toward_zero(self):
        assert days_between(NOW, HOUR - timedelta(hours=26)) == 1
        assert days_between(NOW, HOUR - timedelta(hours=23)) == 0
        assert days_between(NOW, NOW + timedelta(hours=5)) == 0

    @pytest.mark.parametrize("value, months, expected", [
        (datetime(2024, 3, 31), -1, datetime(2024, 2, 29)),
        (datetime(2023, 3, 31), -1, datetime(2023, 2, 28)),
        (datetime(2024, 1, 31), 1, datetime(2024, 2, 29)),
        (datetime(2023, 5, 15, 8), -12, datetime(2022, 5, 15, 8)),
        (datetime(2024, 11, 30), 3, datetime(2025, 2, 28)),
    ])
    def test_add_months_clamps_day(self, value, months, expected):
        assert add_months(value, months) == expected

    @pytest.mark.parametrize("later, earlier, expected", [
        (datetime(2024, 3, 31), datetime(2024, 2, 29), 1),
        (datetime(2024, 3, 1), datetime(2024, 1, 31), 1),
        (datetime(2024, 5, 15, 12, 30), datetime(2023, 5, 20), 11),
        (datetime(2024, 5, 15, 12, 30), datetime(2024, 5, 1), 0),
        (datetime(2024, 1, 10), datetime(2024, 3, 20), -2),
    ])
    def test_months_between(self, later, earlier, expected):
        assert months_between(later, earlier) == expected


class TestRank:
    def test_sorted_by_value_descending(self):
        assert names(rank({"fr": 5, "us": 10, "de": 7})) == ["us", "de", "fr"]

    def test_ties_keep_first_seen_order(self):
        assert names(rank({"us": 10, "de": 10, "fr": 5})) == ["us", "de", "fr"]
        assert names(rank({"de": 10, "us": 10, "fr": 5})) == ["de", "us", "fr"]


class TestPeriods:
    def test_bucket_counts(self):
        assert [(p.name, p.bucket_count) for p in PERIODS] == [
            ("last_day", 24),
            ("last_week", 7),
            ("last_month", 30),
            ("last_year", 12),
        ]

    def test_newest_bucket_is_last(self):
        last_day = PERIODS[0]
        assert last_day.bucket_index(NOW, HOUR) == 23
        assert last_day.bucket_index(NOW, HOUR - timedelta(hours=23)) == 0

    def test_out_of_range_bucket(self):
        last_day = PERIODS[0]
        assert last_day.bucket_index(NOW, NOW + timedelta(hours=2)) is None
        assert last_day.bucket_index(NOW, NOW - timedelta(hours=30)) is None


class TestCompute:
    async def test_windows_from_fixed_now(self, components, link):
        await add_aggregate(components, link, HOUR, 5)
        await add_aggregate(components, link, HOUR - timedelta(hours=26), 2)
        await add_aggregate(components, link, HOUR - timedelta(days=8), 10)

        report = await components.rollup.compute(link.id, 17, now=NOW)

        assert report.last_day.total == 5
        assert report.last_week.total == 7
        assert report.last_month.total == 17
        assert report.last_year.total == 17

        assert report.last_day.views[23] == 5
        assert report.last_week.views[6] == 5
        assert report.last_week.views[5] == 2
        assert report.last_month.views[21] == 10
        assert report.last_year.views[11] == 17
        assert report.updated_at == NOW

    async def test_views_sum_to_total(self, components, link):
        for hours_ago in (0, 5, 30, 200, 900, 5000):
            await add_aggregate(components, link, HOUR - timedelta(hours=hours_ago), hours_ago + 1)

        report = await components.rollup.compute(link.id, now=NOW)

        for period in (report.last_day, report.last_week, report.last_month, report.last_year):
            assert sum(period.views) == period.total

    async def test_year_buckets_follow_calendar_months(self, components, link):
        await add_aggregate(components, link, datetime(2023, 5, 20), 4)
        await add_aggregate(components, link, datetime(2023, 6, 20), 3)
        await add_aggregate(components, link, datetime(2023, 5, 10), 100)

        report = await components.rollup.compute(link.id, now=NOW)

        assert report.last_year.views[0] == 4
        assert report.last_year.views[1] == 3
        assert report.last_year.total == 7

    async def test_empty_link(self, components, link):
        report = await components.rollup.compute(link.id, 0, now=NOW)

        assert report.last_day.views == [0] * 24
        assert report.last_year.views == [0] * 12
        assert report.last_month.total == 0
        assert report.last_day.stats.country == []
        assert names(report.last_day.stats.browser) == list(BROWSERS)
        assert names(report.last_day.stats.os) == list(OPERATING_SYSTEMS)

    async def test_dimension_ranking(self, components, link):
        await add_aggregate(
            components, link, HOUR - timedelta(hours=2), 10,
            browser="firefox", os_name="linux", countries={"us": 10},
        )
        await add_aggregate(
            components, link, HOUR - timedelta(hours=1), 15,
            browser="chrome", os_name="windows",
            countries={"de": 10, "fr": 5},
            referrers={"example[dot]com": 12, "direct": 3},
        )

        stats = (await components.rollup.compute(link.id, now=NOW)).last_day.stats

        assert names(stats.country) == ["us", "de", "fr"]
        assert [item.value for item in stats.country] == [10, 10, 5]
        assert names(stats.referrer) == ["direct", "example[dot]com"]
        assert stats.browser[0].name == "chrome"
        assert stats.browser[0].value == 15
        assert stats.browser[1].name == "firefox"
        assert len(stats.browser) == len(BROWSERS)
        assert stats.os[0].name == "windows"

    async def test_recompute_is_identical(self, components, link):
        await add_aggregate(components, link, HOUR, 5, countries={"us": 3, "de": 2})
        await add_aggregate(components, link, HOUR - timedelta(days=3), 4)

        first = await components.rollup.compute(link.id, now=NOW)
        second = await components.rollup.compute(link.id, now=NOW)

        assert first.model_dump_json() == second.model_dump_json()

    async def test_new_visit_only_grows_its_bucket(self, components, link):
        await add_aggregate(components, link, HOUR - timedelta(hours=3), 2)
        before = await components.rollup.compute(link.id, now=NOW)

        await components.aggregator.record(
            VisitEvent(
                link_id=link.id,
                timestamp=NOW - timedelta(hours=3),
                user_agent=CHROME_WINDOWS,
                country_code="US",
            )
        )
        after = await components.rollup.compute(link.id, now=NOW)

        assert after.last_day.total == before.last_day.total + 1
        index = 23 - 3
        for i, (old, new) in enumerate(zip(before.last_day.views, after.last_day.views)):
            assert new == (old + 1 if i == index else old)

    async def test_serialized_with_camel_case_keys(self, components, link):
        report = await components.rollup.compute(link.id, now=NOW)
        data = report.model_dump(by_alias=True)

        assert set(data) == {"lastDay", "lastWeek", "lastMonth", "lastYear", "updatedAt"}
        assert set(data["lastDay"]) == {"stats", "views", "total"}

    async def test_read_failure_raises_stats_unavailable(self, components, link):
        async with components.database.engine.begin() as conn:
            await conn.run_sync(VisitAggregate.__table__.drop)

        with pytest.raises(StatsUnavailableError):
            await components.rollup.compute(link.id, now=NOW)


class TestCaching:
    async def test_live_reports_are_cached(self, components, link):
        current = hour_bucket(utcnow())
        await add_aggregate(components, link, current, 2)

        first = await components.rollup.compute(link.id)
        await add_aggregate(components, link, current - timedelta(hours=2), 7)
        second = await components.rollup.compute(link.id)

        assert second.last_day.total == first.last_day.total == 2
        assert components.rollup.stats["computed"] == 1

    async def test_explicit_now_bypasses_cache(self, components, link):
        await components.rollup.compute(link.id)
        await components.rollup.compute(link.id, now=NOW)
        await components.rollup.compute(link.id, now=NOW)

        assert components.rollup.stats["computed"] == 3

    async def test_null_cache_always_recomputes(self, components, link):
        rollup = StatsRollup(components.database, NullStatsCache())
        await rollup.compute(link.id)
        await rollup.compute(link.id)

        assert rollup.stats["computed"] == 2


class TestStatsCacheBackends:
    async def test_memory_cache_expires(self, components, link):
        clock = [1000.0]
        cache = MemoryStatsCache(clock=lambda: clock[0])
        report = await components.rollup.compute(link.id, now=NOW)

        await cache.set(link.id, report, ttl=60)
        assert await cache.get(link.id) == report

        clock[0] += 61
        assert await cache.get(link.id) is None

    async def test_memory_cache_evicts_expired_entries_of_other_links(self, components, link):
        clock = [1000.0]
        cache = MemoryStatsCache(clock=lambda: clock[0])
        report = await components.rollup.compute(link.id, now=NOW)

        for _ in range(50):
            await cache.set(uuid4(), report, ttl=60)
        assert len(cache) == 50

        clock[0] += 61
        await cache.set(link.id, report, ttl=60)

        assert len(cache) == 1
        assert await cache.get(link.id) == report

    async def test_memory_cache_is_bounded(self, components, link):
        cache = MemoryStatsCache(clock=lambda: 1000.0, max_entries=3)
        report = await components.rollup.compute(link.id, now=NOW)
        first, *rest = [uuid4() for _ in range(4)]

        await cache.set(first, report, ttl=60)
        for link_id in rest:
            await cache.set(link_id, report, ttl=60)

        assert len(cache) == 3
        assert await cache.get(first) is None
        for link_id in rest:
            assert await cache.get(link_id) == report

    async def test_redis_cache_round_trip(self, components, link):
        report = await components.rollup.compute(link.id, now=NOW)
        client = AsyncMock()
        cache = RedisStatsCache(client)

        await cache.set(link.id, report, ttl=60)
        key, ttl, payload = client.setex.call_args.args
        assert key == stats_cache_key(link.id) == f"stats:{link.id}"
        assert ttl == 60
        assert '"lastDay"' in payload

        client.get.return_value = payload
        assert await cache.get(link.id) == report

    async def test_redis_errors_are_misses(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        cache = RedisStatsCache(client)
        link_id = uuid4()

        assert await cache.get(link_id) is None
        await cache.set(link_id, MagicMock(), ttl=60)

    async def test_redis_unreadable_entry_is_a_miss(self):
        client = AsyncMock()
        client.get.return_value = '{"lastDay": "nope"}'

        assert await RedisStatsCache(client).get(uuid4()) is None
