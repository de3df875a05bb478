"""Tests for merging visits into hourly aggregate rows."""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from linkpulse.aggregators.visit_aggregator import (
    LOCKED,
    UPSERT,
    VisitAggregator,
    resolve_write_strategy,
)
from linkpulse.models.link import Link
from linkpulse.models.visit import VisitAggregate
from linkpulse.schemas.events import VisitEvent
from linkpulse.services.geoip import GeoIPService, GeoLocation
from tests.factories import BROWSER_AGENTS, CHROME_WINDOWS, FIREFOX_MAC, add_aggregate

BASE = datetime(2024, 5, 2, 14, 10)


def visit(link, timestamp=BASE, user_agent=CHROME_WINDOWS, **kwargs) -> VisitEvent:
    kwargs.setdefault("country_code", "US")
    kwargs.setdefault("referrer", "https://www.google.com/search?q=linkpulse")
    return VisitEvent(
        link_id=link.id,
        user_id=link.user_id,
        timestamp=timestamp,
        user_agent=user_agent,
        **kwargs,
    )


async def fetch_rows(components, link) -> list[VisitAggregate]:
    async with components.database.session() as session:
        result = await session.execute(
            select(VisitAggregate)
            .where(VisitAggregate.link_id == link.id)
            .order_by(VisitAggregate.hour_bucket)
        )
        return list(result.scalars().all())


async def fetch_visit_count(components, link) -> int:
    async with components.database.session() as session:
        result = await session.execute(select(Link.visit_count).where(Link.id == link.id))
        return result.scalar_one()


def locked_aggregator(components, aggregator_class=VisitAggregator) -> VisitAggregator:
    return aggregator_class(
        components.database,
        components.registry,
        components.geoip,
        write_strategy="locked",
    )


class StaleReadAggregator(VisitAggregator):
    """Misses the bucket row on its first lock, as if another writer inserted it meanwhile."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock_calls = 0

    async def _lock_bucket(self, session, link, visit):
        row = await super()._lock_bucket(session, link, visit)
        self.lock_calls += 1
        return None if self.lock_calls == 1 else row


class FixedGeoIP(GeoIPService):
    def __init__(self, country: str | None):
        super().__init__()
        self.country = country
        self.lookups: list[str | None] = []

    async def lookup(self, ip_address):
        self.lookups.append(ip_address)
        return GeoLocation(country=self.country)


class TestWriteStrategy:
    @pytest.mark.parametrize("dialect, expected", [
        ("postgresql", UPSERT),
        ("sqlite", UPSERT),
        ("mysql", LOCKED),
    ])
    def test_auto(self, dialect, expected):
        assert resolve_write_strategy("auto", dialect) == expected

    def test_locked_is_allowed_everywhere(self):
        assert resolve_write_strategy("locked", "postgresql") == LOCKED

    def test_upsert_requires_supported_dialect(self):
        with pytest.raises(ValueError):
            resolve_write_strategy("upsert", "mysql")

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            resolve_write_strategy("eventual", "sqlite")


class TestRecord:
    async def test_same_hour_visits_share_one_row(self, components, link):
        aggregator = components.aggregator
        assert aggregator.write_strategy == UPSERT

        await aggregator.record(visit(link, BASE.replace(minute=0)))
        await aggregator.record(visit(link, BASE.replace(minute=59), user_agent=FIREFOX_MAC))
        await aggregator.record(
            visit(link, BASE.replace(minute=30), country_code="DE", referrer=None)
        )

        rows = await fetch_rows(components, link)
        assert len(rows) == 1
        row = rows[0]
        assert row.hour_bucket == datetime(2024, 5, 2, 14)
        assert row.user_id == link.user_id
        assert row.total == 3
        assert row.br_chrome == 2
        assert row.br_firefox == 1
        assert row.os_windows == 2
        assert row.os_macos == 1
        assert row.countries == {"us": 2, "de": 1}
        assert row.referrers == {"google[dot]com": 2, "direct": 1}

    async def test_aware_timestamps_bucket_in_utc(self, components, link):
        local = datetime(2024, 5, 2, 16, 45, tzinfo=timezone(timedelta(hours=2)))
        await components.aggregator.record(visit(link, local))

        rows = await fetch_rows(components, link)
        assert rows[0].hour_bucket == datetime(2024, 5, 2, 14)

    async def test_different_hours_create_separate_rows(self, components, link):
        for hour in range(5):
            await components.aggregator.record(visit(link, BASE + timedelta(hours=hour)))

        rows = await fetch_rows(components, link)
        assert [row.hour_bucket.hour for row in rows] == [14, 15, 16, 17, 18]
        assert all(row.total == 1 for row in rows)

    async def test_concurrent_visits_are_not_lost(self, components, link):
        events = [
            visit(
                link,
                BASE.replace(minute=i % 60),
                user_agent=BROWSER_AGENTS[i % len(BROWSER_AGENTS)],
                country_code=["US", "DE", "NO"][i % 3],
            )
            for i in range(20)
        ]

        await asyncio.gather(*(components.aggregator.record(event) for event in events))

        rows = await fetch_rows(components, link)
        assert len(rows) == 1
        row = rows[0]
        assert row.total == 20
        assert sum(row.browser_counts().values()) == 20
        assert sum(row.os_counts().values()) == 20
        assert sum(row.countries.values()) == 20
        assert sum(row.referrers.values()) == 20
        assert await fetch_visit_count(components, link) == 20

    async def test_locked_strategy(self, components, link):
        aggregator = locked_aggregator(components)
        for minute in (5, 25, 45):
            await aggregator.record(visit(link, BASE.replace(minute=minute)))
        await aggregator.record(visit(link, BASE + timedelta(hours=1), country_code="SE"))

        rows = await fetch_rows(components, link)
        assert [row.total for row in rows] == [3, 1]
        assert rows[0].countries == {"us": 3}
        assert rows[1].countries == {"se": 1}
        assert rows[0].br_chrome == 3
        assert aggregator.stats["recorded"] == 4

    async def test_concurrent_visits_with_locked_strategy(self, components, link):
        aggregator = locked_aggregator(components)
        events = [
            visit(
                link,
                BASE.replace(minute=i % 60),
                user_agent=BROWSER_AGENTS[i % len(BROWSER_AGENTS)],
                country_code=["US", "DE", "NO"][i % 3],
                referrer=[None, "https://www.google.com/"][i % 2],
            )
            for i in range(20)
        ]

        await asyncio.gather(*(aggregator.record(event) for event in events))

        rows = await fetch_rows(components, link)
        assert len(rows) == 1
        row = rows[0]
        assert row.total == 20
        assert sum(row.browser_counts().values()) == 20
        assert sum(row.os_counts().values()) == 20
        assert row.countries == {"us": 7, "de": 7, "no": 6}
        assert row.referrers == {"direct": 10, "google[dot]com": 10}
        assert await fetch_visit_count(components, link) == 20
        assert aggregator.stats["recorded"] == 20
        assert aggregator.stats["failed"] == 0

    async def test_locked_insert_race_is_retried_as_update(self, components, link):
        await add_aggregate(components, link, BASE.replace(minute=0), total=4)
        aggregator = locked_aggregator(components, StaleReadAggregator)

        await aggregator.record(visit(link, user_agent=FIREFOX_MAC, country_code="DE"))

        assert aggregator.lock_calls == 2
        rows = await fetch_rows(components, link)
        assert len(rows) == 1
        row = rows[0]
        assert row.total == 5
        assert row.br_chrome == 4
        assert row.br_firefox == 1
        assert row.os_macos == 1
        assert row.countries == {"us": 4, "de": 1}
        assert row.referrers == {"direct": 4, "google[dot]com": 1}
        assert aggregator.stats["recorded"] == 1
        assert aggregator.stats["failed"] == 0

    async def test_visit_count_is_incremented(self, components, link):
        for _ in range(3):
            await components.aggregator.record(visit(link))

        assert await fetch_visit_count(components, link) == 3

    async def test_unknown_link_is_skipped(self, components, link):
        await components.aggregator.record(
            VisitEvent(link_id=uuid4(), timestamp=BASE, user_agent=CHROME_WINDOWS)
        )

        assert await fetch_rows(components, link) == []
        assert components.aggregator.stats["skipped"] == 1
        assert components.aggregator.stats["recorded"] == 0

    async def test_missing_user_agent_counts_as_other(self, components, link):
        await components.aggregator.record(visit(link, user_agent=None))

        row = (await fetch_rows(components, link))[0]
        assert row.br_other == 1
        assert row.os_other == 1

    async def test_write_failure_propagates(self, components, link):
        async with components.database.engine.begin() as conn:
            await conn.run_sync(VisitAggregate.__table__.drop)

        with pytest.raises(SQLAlchemyError):
            await components.aggregator.record(visit(link))
        assert components.aggregator.stats["failed"] == 1


class TestCountryResolution:
    async def test_geoip_used_without_country_header(self, components, link):
        geoip = FixedGeoIP("NO")
        aggregator = VisitAggregator(components.database, components.registry, geoip)

        await aggregator.record(visit(link, country_code=None, ip_address="8.8.8.8"))

        row = (await fetch_rows(components, link))[0]
        assert row.countries == {"no": 1}
        assert geoip.lookups == ["8.8.8.8"]

    async def test_country_header_wins(self, components, link):
        geoip = FixedGeoIP("NO")
        aggregator = VisitAggregator(components.database, components.registry, geoip)

        await aggregator.record(visit(link, country_code="FR", ip_address="8.8.8.8"))

        row = (await fetch_rows(components, link))[0]
        assert row.countries == {"fr": 1}
        assert geoip.lookups == []

    async def test_private_address_is_unknown(self, components, link):
        await components.aggregator.record(
            visit(link, country_code=None, ip_address="192.168.1.20")
        )

        row = (await fetch_rows(components, link))[0]
        assert row.countries == {"unknown": 1}
