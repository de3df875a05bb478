"""Visit aggregation and stats rollup."""

from linkpulse.aggregators.stats_rollup import PERIODS, RollupPeriod, StatsRollup
from linkpulse.aggregators.visit_aggregator import VisitAggregator

__all__ = [
    "PERIODS",
    "RollupPeriod",
    "StatsRollup",
    "VisitAggregator",
]
