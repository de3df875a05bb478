"""Hour-bucketed visit aggregate SQLAlchemy model."""

from collections import Counter
from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from linkpulse.core.database import Base

# Closed classification sets, in the order reports list them
BROWSERS = ("chrome", "edge", "firefox", "ie", "opera", "other", "safari")
OPERATING_SYSTEMS = ("android", "ios", "linux", "macos", "other", "windows")


def browser_column(browser: str) -> str:
    return f"br_{browser}"


def os_column(os_name: str) -> str:
    return f"os_{os_name}"


class CounterJSON(TypeDecorator):
    """Key-counted mapping stored as a JSON object.

    Python side sees a ``collections.Counter``; the database stores a plain
    ``{"key": count}`` object (JSONB on PostgreSQL so it can be merged in SQL).
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return {}
        return {str(key): int(count) for key, count in value.items()}

    def process_result_value(self, value, dialect):
        return Counter(value or {})


def _counter_column(comment: str) -> Mapped[int]:
    return mapped_column(
        Integer,
        default=0,
        server_default="0",
        nullable=False,
        comment=comment,
    )


class VisitAggregate(Base):
    """Visit counts for one link within one UTC hour.

    Primary key is (link_id, hour_bucket), so concurrent writers for the
    same hour converge on a single row through an upsert.
    """

    __tablename__ = "visit_aggregates"

    link_id: Mapped[UUID] = mapped_column(
        ForeignKey("links.id", ondelete="CASCADE"),
        primary_key=True,
    )
    hour_bucket: Mapped[datetime] = mapped_column(
        DateTime,
        primary_key=True,
        comment="Visit time truncated to the hour (naive UTC)",
    )
    user_id: Mapped[UUID] = mapped_column(
        nullable=False,
        index=True,
        comment="Owner of the link at the time of the visit",
    )
    total: Mapped[int] = _counter_column("Visits in this hour")

    br_chrome: Mapped[int] = _counter_column("Chrome visits")
    br_edge: Mapped[int] = _counter_column("Edge visits")
    br_firefox: Mapped[int] = _counter_column("Firefox visits")
    br_ie: Mapped[int] = _counter_column("Internet Explorer visits")
    br_opera: Mapped[int] = _counter_column("Opera visits")
    br_other: Mapped[int] = _counter_column("Unclassified browser visits")
    br_safari: Mapped[int] = _counter_column("Safari visits")

    os_android: Mapped[int] = _counter_column("Android visits")
    os_ios: Mapped[int] = _counter_column("iOS visits")
    os_linux: Mapped[int] = _counter_column("Linux visits")
    os_macos: Mapped[int] = _counter_column("macOS visits")
    os_other: Mapped[int] = _counter_column("Unclassified OS visits")
    os_windows: Mapped[int] = _counter_column("Windows visits")

    countries: Mapped[Counter] = mapped_column(
        CounterJSON,
        default=dict,
        nullable=False,
        comment="Lowercase country code (or 'unknown') to visit count",
    )
    referrers: Mapped[Counter] = mapped_column(
        CounterJSON,
        default=dict,
        nullable=False,
        comment="Referrer host with dots replaced by [dot] (or 'direct') to visit count",
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def browser_counts(self) -> dict[str, int]:
        return {name: getattr(self, browser_column(name)) for name in BROWSERS}

    def os_counts(self) -> dict[str, int]:
        return {name: getattr(self, os_column(name)) for name in OPERATING_SYSTEMS}

    def __repr__(self) -> str:
        return f"<VisitAggregate {self.link_id} hour={self.hour_bucket} total={self.total}>"
