"""Linkpulse: short links with hour-bucketed visit analytics."""

__version__ = "0.1.0"
