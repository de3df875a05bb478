"""Pydantic schemas."""

from linkpulse.schemas.events import VisitEvent
from linkpulse.schemas.link import (
    LinkCreate,
    LinkListResponse,
    LinkResponse,
    LinkStatsResponse,
)
from linkpulse.schemas.stats import DimensionStats, PeriodStats, StatItem, StatsReport

__all__ = [
    "VisitEvent",
    "LinkCreate",
    "LinkResponse",
    "LinkListResponse",
    "LinkStatsResponse",
    "StatItem",
    "DimensionStats",
    "PeriodStats",
    "StatsReport",
]
