"""Visit ingestion queues."""

from linkpulse.queues.visit_queue import (
    InlineVisitQueue,
    RedisStreamVisitQueue,
    VisitQueue,
    create_visit_queue,
)

__all__ = [
    "VisitQueue",
    "InlineVisitQueue",
    "RedisStreamVisitQueue",
    "create_visit_queue",
]
