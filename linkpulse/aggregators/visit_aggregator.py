"""Merges single visits into hour-bucketed aggregate rows."""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import Integer, String, cast, func, literal, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from linkpulse.core.database import Database
from linkpulse.core.observability import record_visit_recorded
from linkpulse.core.timeutil import hour_bucket, utcnow
from linkpulse.models.visit import VisitAggregate, browser_column, os_column
from linkpulse.schemas.events import VisitEvent
from linkpulse.services.classifier import (
    classify_country,
    classify_referrer,
    classify_user_agent,
)
from linkpulse.services.geoip import GeoIPService
from linkpulse.services.link_registry import LinkRef, LinkRegistry

logger = structlog.get_logger()

UPSERT = "upsert"
LOCKED = "locked"

# Dialects with INSERT ... ON CONFLICT DO UPDATE and in-statement JSON merge
UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class ClassifiedVisit:
    """A visit reduced to the keys it increments."""

    hour_bucket: datetime
    browser: str
    os: str
    country: str
    referrer: str


def resolve_write_strategy(strategy: str, dialect: str) -> str:
    """Pick ``upsert`` or ``locked`` for a configured strategy and dialect."""
    if strategy == "auto":
        return UPSERT if dialect in UPSERT_DIALECTS else LOCKED
    if strategy == UPSERT and dialect not in UPSERT_DIALECTS:
        raise ValueError(f"Upsert write strategy is not supported on {dialect}")
    if strategy not in (UPSERT, LOCKED):
        raise ValueError(f"Unknown aggregate write strategy: {strategy}")
    return strategy


def _increment_key_postgresql(column, key: str):
    key_param = cast(literal(key), String)
    current = func.coalesce(cast(func.jsonb_extract_path_text(column, key_param), Integer), 0)
    return column.op("||")(func.jsonb_build_object(key_param, current + 1))


def _increment_key_sqlite(column, key: str):
    path = '$."{}"'.format(key)
    current = func.coalesce(cast(func.json_extract(column, path), Integer), 0)
    return func.json_set(column, path, current + 1)


class VisitAggregator:
    """Records visits into ``VisitAggregate`` rows.

    Each ``record`` call increments exactly one row, keyed by
    (link_id, hour_bucket), either through a single atomic upsert or inside a
    transaction holding a lock on the bucket row (the database write lock on
    SQLite). Failures of the aggregate write propagate to the caller; the
    aggregator never retries on its own.

    Usage:
        aggregator = VisitAggregator(database, registry, geoip)
        queue.on_deliver(aggregator.record)
    """

    def __init__(
        self,
        database: Database,
        registry: LinkRegistry,
        geoip: GeoIPService,
        write_strategy: str = "auto",
    ):
        self._database = database
        self._registry = registry
        self._geoip = geoip
        self.write_strategy = resolve_write_strategy(write_strategy, database.dialect)
        self._recorded = 0
        self._skipped = 0
        self._failed = 0

    async def classify(self, event: VisitEvent) -> ClassifiedVisit:
        """Resolve the event's browser, OS, country and referrer keys."""
        browser, os_name = classify_user_agent(event.user_agent)
        country = event.country_code
        if not country:
            country = (await self._geoip.lookup(event.ip_address)).country
        return ClassifiedVisit(
            hour_bucket=hour_bucket(event.timestamp),
            browser=browser,
            os=os_name,
            country=classify_country(country),
            referrer=classify_referrer(event.referrer),
        )

    async def record(self, event: VisitEvent) -> None:
        """Merge one visit into its hourly aggregate row.

        Visits for links that no longer exist are skipped. The link's
        denormalized visit counter is bumped alongside, best-effort.
        """
        start_time = time.perf_counter()

        link = await self._registry.find(event.link_id)
        if link is None:
            self._skipped += 1
            logger.warning("Visit for unknown link skipped", link_id=str(event.link_id))
            return

        visit = await self.classify(event)
        write_error, _ = await asyncio.gather(
            self._write(link, visit),
            self._increment_visit_count(link),
            return_exceptions=True,
        )
        if isinstance(write_error, BaseException):
            self._failed += 1
            raise write_error

        self._recorded += 1
        duration = time.perf_counter() - start_time
        record_visit_recorded(duration)
        logger.debug(
            "Visit recorded",
            link_id=str(link.id),
            hour_bucket=visit.hour_bucket.isoformat(),
            browser=visit.browser,
            os=visit.os,
            country=visit.country,
            referrer=visit.referrer,
            duration_ms=round(duration * 1000, 2),
        )

    async def _write(self, link: LinkRef, visit: ClassifiedVisit) -> None:
        if self.write_strategy == UPSERT:
            await self._write_upsert(link, visit)
            return
        try:
            await self._write_locked(link, visit)
        except IntegrityError:
            # A concurrent writer created the bucket first; it now exists
            logger.debug("Hour bucket created concurrently, retrying as update", link_id=str(link.id))
            await self._write_locked(link, visit)

    async def _increment_visit_count(self, link: LinkRef) -> None:
        try:
            await self._registry.increment_visit_count(link.id)
        except Exception as e:
            logger.warning("Failed to increment link visit count", link_id=str(link.id), error=str(e))

    def _first_row_values(self, link: LinkRef, visit: ClassifiedVisit, now: datetime) -> dict:
        return {
            "link_id": link.id,
            "hour_bucket": visit.hour_bucket,
            "user_id": link.user_id,
            "total": 1,
            browser_column(visit.browser): 1,
            os_column(visit.os): 1,
            "countries": Counter({visit.country: 1}),
            "referrers": Counter({visit.referrer: 1}),
            "created_at": now,
            "updated_at": now,
        }

    async def _write_upsert(self, link: LinkRef, visit: ClassifiedVisit) -> None:
        """Insert the bucket or increment it in one atomic statement."""
        dialect = self._database.dialect
        insert = UPSERT_DIALECTS[dialect]
        increment_key = (
            _increment_key_postgresql if dialect == "postgresql" else _increment_key_sqlite
        )
        table = VisitAggregate.__table__
        now = utcnow()
        browser_col = browser_column(visit.browser)
        os_col = os_column(visit.os)

        stmt = insert(VisitAggregate).values(**self._first_row_values(link, visit, now))
        stmt = stmt.on_conflict_do_update(
            index_elements=["link_id", "hour_bucket"],
            set_={
                "total": table.c.total + 1,
                browser_col: table.c[browser_col] + 1,
                os_col: table.c[os_col] + 1,
                "countries": increment_key(table.c.countries, visit.country),
                "referrers": increment_key(table.c.referrers, visit.referrer),
                "updated_at": now,
            },
        )

        async with self._database.session() as session:
            async with session.begin():
                await session.execute(stmt)

    async def _lock_bucket(self, session, link: LinkRef, visit: ClassifiedVisit):
        """Lock the bucket row and return its maps, or None if it doesn't exist yet."""
        if self._database.dialect == "sqlite":
            # No row locks in SQLite; take the database write lock instead
            connection = await session.connection()
            await connection.exec_driver_sql("BEGIN IMMEDIATE")
        result = await session.execute(
            select(VisitAggregate.countries, VisitAggregate.referrers)
            .where(
                VisitAggregate.link_id == link.id,
                VisitAggregate.hour_bucket == visit.hour_bucket,
            )
            .with_for_update()
        )
        return result.one_or_none()

    async def _write_locked(self, link: LinkRef, visit: ClassifiedVisit) -> None:
        """Lock the bucket row, then increment it or insert it."""
        now = utcnow()
        table = VisitAggregate.__table__
        browser_col = browser_column(visit.browser)
        os_col = os_column(visit.os)

        async with self._database.session() as session:
            async with session.begin():
                row = await self._lock_bucket(session, link, visit)

                if row is None:
                    session.add(VisitAggregate(**self._first_row_values(link, visit, now)))
                    await session.flush()
                    return

                await session.execute(
                    table.update()
                    .where(
                        table.c.link_id == link.id,
                        table.c.hour_bucket == visit.hour_bucket,
                    )
                    .values(
                        {
                            "total": table.c.total + 1,
                            browser_col: table.c[browser_col] + 1,
                            os_col: table.c[os_col] + 1,
                            "countries": row.countries + Counter({visit.country: 1}),
                            "referrers": row.referrers + Counter({visit.referrer: 1}),
                            "updated_at": now,
                        }
                    )
                )

    @property
    def stats(self) -> dict:
        """Get aggregator statistics."""
        return {
            "write_strategy": self.write_strategy,
            "recorded": self._recorded,
            "skipped": self._skipped,
            "failed": self._failed,
        }
