"""Pydantic schemas for visit statistics reports."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StatItem(BaseModel):
    """One ranked entry of a dimension breakdown."""

    name: str
    value: int


class DimensionStats(BaseModel):
    """Per-dimension breakdowns, each sorted by value descending."""

    browser: list[StatItem] = Field(default_factory=list)
    os: list[StatItem] = Field(default_factory=list)
    country: list[StatItem] = Field(default_factory=list)
    referrer: list[StatItem] = Field(default_factory=list)


class PeriodStats(BaseModel):
    """Views bucketed oldest-to-newest for one rollup period."""

    stats: DimensionStats
    views: list[int]
    total: int


class StatsReport(BaseModel):
    """Four rolling-window reports for one link.

    Serialized with camelCase keys (``lastDay``, ``updatedAt``, ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    last_day: PeriodStats
    last_week: PeriodStats
    last_month: PeriodStats
    last_year: PeriodStats
    updated_at: datetime
