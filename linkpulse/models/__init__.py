"""Linkpulse SQLAlchemy models."""

from linkpulse.core.database import Base
from linkpulse.models.link import Link
from linkpulse.models.user import User
from linkpulse.models.visit import VisitAggregate

__all__ = ["Base", "Link", "User", "VisitAggregate"]
