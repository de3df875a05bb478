"""Folds hourly visit aggregates into rolling-window stats reports."""

import calendar
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from linkpulse.core.database import Database
from linkpulse.core.exceptions import StatsUnavailableError
from linkpulse.core.observability import record_rollup
from linkpulse.core.timeutil import to_naive_utc, utcnow
from linkpulse.models.visit import BROWSERS, OPERATING_SYSTEMS, VisitAggregate
from linkpulse.schemas.stats import DimensionStats, PeriodStats, StatItem, StatsReport
from linkpulse.services.stats_cache import StatsCache

logger = structlog.get_logger()


def _truncated_units(delta: timedelta, unit: timedelta) -> int:
    units = abs(delta) // unit
    return units if delta >= timedelta(0) else -units


def hours_between(later: datetime, earlier: datetime) -> int:
    """Whole hours from ``earlier`` to ``later``, truncated toward zero."""
    return _truncated_units(later - earlier, timedelta(hours=1))


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from ``earlier`` to ``later``, truncated toward zero."""
    return _truncated_units(later - earlier, timedelta(days=1))


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    years, month_index = divmod(value.month - 1 + months, 12)
    year = value.year + years
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def months_between(later: datetime, earlier: datetime) -> int:
    """Whole calendar months from ``earlier`` to ``later``, truncated toward zero."""
    if later < earlier:
        return -months_between(earlier, later)
    months = (later.year - earlier.year) * 12 + later.month - earlier.month
    if months and add_months(earlier, months) > later:
        months -= 1
    return months


@dataclass(frozen=True)
class RollupPeriod:
    """A lookback window split into equal calendar buckets."""

    name: str
    bucket_count: int
    start: Callable[[datetime], datetime]
    distance: Callable[[datetime, datetime], int]

    def bucket_index(self, now: datetime, bucket: datetime) -> int | None:
        """Position of ``bucket`` in the views array, or None if out of range."""
        index = self.bucket_count - 1 - self.distance(now, bucket)
        if 0 <= index < self.bucket_count:
            return index
        return None


PERIODS = (
    RollupPeriod("last_day", 24, lambda now: now - timedelta(hours=24), hours_between),
    RollupPeriod("last_week", 7, lambda now: now - timedelta(days=7), days_between),
    RollupPeriod("last_month", 30, lambda now: now - timedelta(days=30), days_between),
    RollupPeriod("last_year", 12, lambda now: add_months(now, -12), months_between),
)


def rank(tally: dict[str, int]) -> list[StatItem]:
    """Sort a tally by value descending; ties keep their first-seen order."""
    ordered = sorted(tally.items(), key=lambda item: item[1], reverse=True)
    return [StatItem(name=name, value=value) for name, value in ordered]


class _PeriodTally:
    def __init__(self, period: RollupPeriod, now: datetime):
        self.period = period
        self.now = now
        self.start = period.start(now)
        self.views = [0] * period.bucket_count
        self.total = 0
        self.browser = dict.fromkeys(BROWSERS, 0)
        self.os = dict.fromkeys(OPERATING_SYSTEMS, 0)
        self.country: dict[str, int] = {}
        self.referrer: dict[str, int] = {}

    def add(self, row: VisitAggregate) -> None:
        if not row.hour_bucket > self.start:
            return
        index = self.period.bucket_index(self.now, row.hour_bucket)
        if index is None:
            logger.debug(
                "Aggregate row outside period buckets",
                period=self.period.name,
                hour_bucket=row.hour_bucket.isoformat(),
            )
            return

        self.views[index] += row.total
        self.total += row.total
        for name, count in row.browser_counts().items():
            self.browser[name] += count
        for name, count in row.os_counts().items():
            self.os[name] += count
        for name, count in row.countries.items():
            self.country[name] = self.country.get(name, 0) + count
        for name, count in row.referrers.items():
            self.referrer[name] = self.referrer.get(name, 0) + count

    def result(self) -> PeriodStats:
        return PeriodStats(
            stats=DimensionStats(
                browser=rank(self.browser),
                os=rank(self.os),
                country=rank(self.country),
                referrer=rank(self.referrer),
            ),
            views=self.views,
            total=self.total,
        )


class StatsRollup:
    """Builds ``StatsReport`` objects from a link's aggregate rows.

    Read-only with respect to the aggregate table. Live reports (no explicit
    ``now``) go through the stats cache and may lag writes by up to the TTL.
    """

    def __init__(self, database: Database, cache: StatsCache, cache_ttl: int = 60):
        self._database = database
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._computed = 0

    async def compute(
        self,
        link_id: UUID,
        visit_count: int | None = None,
        now: datetime | None = None,
    ) -> StatsReport:
        """Return the four rolling-window reports for a link.

        Args:
            link_id: Link whose aggregate rows are folded.
            visit_count: The link's denormalized counter; compared against
                the row totals and logged when they disagree.
            now: Reference time; when given the cache is bypassed.

        Raises:
            StatsUnavailableError: If the aggregate rows cannot be read.
        """
        live = now is None
        if live:
            cached = await self._cache.get(link_id)
            if cached is not None:
                return cached
            now = utcnow()
        else:
            now = to_naive_utc(now)

        start_time = time.perf_counter()
        tallies = [_PeriodTally(period, now) for period in PERIODS]
        all_time_total = 0
        rows_read = 0

        try:
            async with self._database.session() as session:
                rows = await session.stream_scalars(
                    select(VisitAggregate)
                    .where(VisitAggregate.link_id == link_id)
                    .order_by(VisitAggregate.hour_bucket)
                )
                async for row in rows:
                    rows_read += 1
                    all_time_total += row.total
                    for tally in tallies:
                        tally.add(row)
        except SQLAlchemyError as e:
            logger.error("Failed to read visit aggregates", link_id=str(link_id), error=str(e))
            raise StatsUnavailableError(link_id, e) from e

        report = StatsReport(
            **{tally.period.name: tally.result() for tally in tallies},
            updated_at=now,
        )

        if visit_count is not None and visit_count != all_time_total:
            logger.debug(
                "Link visit counter differs from aggregate total",
                link_id=str(link_id),
                visit_count=visit_count,
                aggregate_total=all_time_total,
            )

        duration = time.perf_counter() - start_time
        record_rollup(duration)
        self._computed += 1
        logger.debug(
            "Stats computed",
            link_id=str(link_id),
            rows=rows_read,
            duration_ms=round(duration * 1000, 2),
        )

        if live:
            await self._cache.set(link_id, report, self._cache_ttl)
        return report

    @property
    def stats(self) -> dict:
        return {"computed": self._computed}
