"""Visit ingestion queue.

Decouples the redirect path from the aggregate write path. Two backends:

- ``RedisStreamVisitQueue``: durable, at-least-once. Events are appended to
  a Redis stream and read through a consumer group; a message is
  acknowledged only after the handler returns, so a crashed consumer's
  messages are re-claimed and delivered again.
- ``InlineVisitQueue``: degraded mode. The handler runs in-process as a
  background task; after ``max_attempts`` failures the visit is dropped and
  counted, and anything in flight when the process dies is lost.

Usage:
    queue = await create_visit_queue(settings, redis_client)
    queue.on_deliver(aggregator.record)
    await queue.start(consume=True)
    queue.submit(event)  # fire-and-forget from the redirect handler
    ...
    await queue.stop()
"""

import asyncio
import os
import socket
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from linkpulse.core.config import Settings
from linkpulse.core.exceptions import QueueUnavailableError
from linkpulse.core.observability import (
    record_visit_dropped,
    record_visit_enqueued,
    record_visit_failed,
    record_visit_skipped,
    set_consumer_running,
)
from linkpulse.core.redis import ping
from linkpulse.schemas.events import VisitEvent

logger = structlog.get_logger()

# Type alias for the consumer-side handler
VisitHandler = Callable[[VisitEvent], Awaitable[None]]


class VisitQueue(ABC):
    """Interface shared by the queue backends."""

    backend = "abstract"

    def __init__(self) -> None:
        self._handler: VisitHandler | None = None
        self._pending: set[asyncio.Task] = set()
        self._running = False
        self._enqueued = 0
        self._processed = 0
        self._failed = 0
        self._dropped = 0

    def on_deliver(self, handler: VisitHandler) -> None:
        """Register the consumer-side handler for delivered visits."""
        self._handler = handler
        logger.debug("Visit handler registered", backend=self.backend, handler=getattr(handler, "__name__", repr(handler)))

    @abstractmethod
    async def enqueue(self, event: VisitEvent) -> None:
        """Hand a visit to the queue; raises if the backend rejects it."""

    @abstractmethod
    async def start(self, consume: bool = True) -> None:
        """Prepare the backend and, if ``consume``, begin delivering visits."""

    async def stop(self) -> None:
        """Stop delivering and wait for scheduled work to finish."""
        await self.drain()
        self._running = False

    def submit(self, event: VisitEvent) -> asyncio.Task:
        """Enqueue without waiting; failures are logged, never raised."""
        return self._track(self._submit(event))

    async def _submit(self, event: VisitEvent) -> None:
        try:
            await self.enqueue(event)
        except Exception as e:
            # Never let ingestion failures affect the caller
            logger.warning(
                "Failed to enqueue visit",
                backend=self.backend,
                link_id=str(event.link_id),
                error=str(e),
            )
            record_visit_skipped("enqueue_error")

    def _track(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every submitted or scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        """Get queue statistics."""
        return {
            "backend": self.backend,
            "running": self._running,
            "enqueued": self._enqueued,
            "processed": self._processed,
            "failed": self._failed,
            "dropped": self._dropped,
            "in_flight": len(self._pending),
        }


class InlineVisitQueue(VisitQueue):
    """Runs the handler in-process; not durable."""

    backend = "inline"

    def __init__(self, max_attempts: int = 1):
        super().__init__()
        self._max_attempts = max(1, max_attempts)

    async def enqueue(self, event: VisitEvent) -> None:
        self._enqueued += 1
        record_visit_enqueued(self.backend)
        self._track(self._deliver(event))

    async def start(self, consume: bool = True) -> None:
        if self._running:
            return
        self._running = True
        logger.warning(
            "Inline visit queue started; visits are not durable and are lost "
            "if the process stops before they are recorded",
            max_attempts=self._max_attempts,
        )

    async def _deliver(self, event: VisitEvent) -> None:
        if self._handler is None:
            self._drop(event, reason="no handler registered")
            return

        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._handler(event)
            except Exception as e:
                self._failed += 1
                record_visit_failed("handler_error")
                logger.warning(
                    "Visit delivery failed",
                    link_id=str(event.link_id),
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                continue
            self._processed += 1
            return

        self._drop(event, reason="attempts exhausted")

    def _drop(self, event: VisitEvent, reason: str) -> None:
        self._dropped += 1
        record_visit_dropped(self.backend)
        logger.error(
            "Visit dropped",
            backend=self.backend,
            link_id=str(event.link_id),
            reason=reason,
        )


class RedisStreamVisitQueue(VisitQueue):
    """Durable queue on a Redis stream with a consumer group."""

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        stream: str,
        group: str,
        consumer_name: str | None = None,
        batch_size: int = 50,
        block_ms: int = 2000,
        claim_idle_ms: int = 60_000,
        max_deliveries: int = 5,
        concurrency: int = 6,
        error_backoff: float = 1.0,
        max_len: int = 0,
    ):
        super().__init__()
        self._client = client
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._claim_idle_ms = claim_idle_ms
        self._max_deliveries = max_deliveries
        self._semaphore = asyncio.Semaphore(concurrency)
        self._error_backoff = error_backoff
        self._max_len = max_len
        self._task: asyncio.Task | None = None
        self._last_claim = 0.0
        self._reclaimed = 0

    @classmethod
    def from_settings(cls, client: redis.Redis, settings: Settings) -> "RedisStreamVisitQueue":
        return cls(
            client,
            stream=settings.queue_stream,
            group=settings.queue_group,
            consumer_name=settings.queue_consumer_name or None,
            batch_size=settings.queue_batch_size,
            block_ms=settings.queue_block_ms,
            claim_idle_ms=settings.queue_claim_idle_ms,
            max_deliveries=settings.queue_max_deliveries,
            concurrency=settings.queue_concurrency,
            max_len=settings.queue_max_len,
        )

    async def enqueue(self, event: VisitEvent) -> None:
        fields = {"data": event.model_dump_json()}
        if self._max_len > 0:
            message_id = await self._client.xadd(
                self.stream, fields, maxlen=self._max_len, approximate=True
            )
        else:
            message_id = await self._client.xadd(self.stream, fields)
        self._enqueued += 1
        record_visit_enqueued(self.backend)
        logger.debug("Visit enqueued", link_id=str(event.link_id), message_id=message_id)

    async def _ensure_group(self) -> None:
        """Create the stream and consumer group if they don't exist."""
        try:
            await self._client.xgroup_create(
                name=self.stream,
                groupname=self.group,
                id="0",
                mkstream=True,
            )
            logger.info("Created visit stream consumer group", stream=self.stream, group=self.group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def start(self, consume: bool = True) -> None:
        if self._running:
            logger.warning("Visit queue already running")
            return

        await self._ensure_group()
        self._running = True

        if consume:
            if self._handler is None:
                raise RuntimeError("Register a handler with on_deliver() before consuming")
            self._task = asyncio.create_task(self._consume_loop())
            set_consumer_running(True)

        logger.info(
            "Visit queue started",
            backend=self.backend,
            stream=self.stream,
            group=self.group,
            consumer=self.consumer_name if consume else None,
        )

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info(
            "Stopping visit queue",
            processed=self._processed,
            failed=self._failed,
            dropped=self._dropped,
        )
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            set_consumer_running(False)

        await self.drain()
        logger.info("Visit queue stopped")

    async def _consume_loop(self) -> None:
        """Read new messages and periodically re-claim stale ones."""
        logger.debug("Visit consumer loop started", consumer=self.consumer_name)
        while self._running:
            try:
                if self._claim_due():
                    await self.reclaim_stale()
                await self.read_batch()
            except asyncio.CancelledError:
                logger.debug("Visit consumer loop cancelled")
                raise
            except redis.RedisError as e:
                logger.error("Redis error in visit consumer loop", error=str(e))
                await asyncio.sleep(self._error_backoff)
            except Exception:
                logger.exception("Unexpected error in visit consumer loop")
                await asyncio.sleep(self._error_backoff)

    def _claim_due(self) -> bool:
        now = time.monotonic()
        if (now - self._last_claim) * 1000 < self._claim_idle_ms / 2:
            return False
        self._last_claim = now
        return True

    async def read_batch(self) -> int:
        """Deliver one batch of never-delivered messages; returns its size."""
        response = await self._client.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_name,
            streams={self.stream: ">"},
            count=self._batch_size,
            block=self._block_ms,
        )
        delivered = 0
        for _stream, messages in response or []:
            await self._process_messages(messages)
            delivered += len(messages)
        return delivered

    async def reclaim_stale(self) -> int:
        """Take over messages left unacknowledged longer than the idle limit.

        Messages already delivered ``max_deliveries`` times are acknowledged
        and counted as dropped instead of being retried forever.
        """
        pending = await self._client.xpending_range(
            self.stream,
            self.group,
            min="-",
            max="+",
            count=self._batch_size,
            idle=self._claim_idle_ms,
        )
        if not pending:
            return 0

        retry_ids = []
        for entry in pending:
            if entry["times_delivered"] >= self._max_deliveries:
                await self._ack(entry["message_id"])
                self._dropped += 1
                record_visit_dropped(self.backend)
                logger.error(
                    "Visit dropped",
                    backend=self.backend,
                    message_id=entry["message_id"],
                    times_delivered=entry["times_delivered"],
                    reason="max deliveries exceeded",
                )
            else:
                retry_ids.append(entry["message_id"])

        if not retry_ids:
            return 0

        claimed = await self._client.xclaim(
            self.stream,
            self.group,
            self.consumer_name,
            min_idle_time=self._claim_idle_ms,
            message_ids=retry_ids,
        )
        self._reclaimed += len(claimed)
        logger.info("Re-claimed stale visit messages", count=len(claimed))
        await self._process_messages(claimed)
        return len(claimed)

    async def _process_messages(self, messages: list) -> None:
        await asyncio.gather(
            *(self._process_message(message_id, fields) for message_id, fields in messages)
        )

    async def _process_message(self, message_id: str, fields: dict | None) -> None:
        """Run the handler for one message and acknowledge it on success."""
        async with self._semaphore:
            try:
                event = VisitEvent.model_validate_json((fields or {})["data"])
            except (KeyError, ValidationError) as e:
                # Unparseable messages can never succeed
                self._failed += 1
                record_visit_failed("invalid_event")
                logger.warning("Invalid visit message", message_id=message_id, error=str(e))
                await self._ack(message_id)
                return

            try:
                await self._handler(event)
            except Exception as e:
                self._failed += 1
                record_visit_failed("handler_error")
                logger.error(
                    "Visit handler failed; message left pending for redelivery",
                    message_id=message_id,
                    link_id=str(event.link_id),
                    error=str(e),
                )
                return

            self._processed += 1
            await self._ack(message_id)

    async def _ack(self, message_id: str) -> None:
        """Acknowledge a finished message and delete it from the stream."""
        try:
            await self._client.xack(self.stream, self.group, message_id)
        except redis.RedisError as e:
            # The message stays pending and will be delivered again
            logger.warning("Failed to acknowledge visit message", message_id=message_id, error=str(e))
            return
        try:
            # Single consumer group, so nobody else needs the entry
            await self._client.xdel(self.stream, message_id)
        except redis.RedisError as e:
            logger.warning("Failed to delete acknowledged visit message", message_id=message_id, error=str(e))

    @property
    def stats(self) -> dict:
        stats = super().stats
        stats.update(
            stream=self.stream,
            group=self.group,
            consumer=self.consumer_name,
            reclaimed=self._reclaimed,
        )
        return stats


async def create_visit_queue(settings: Settings, client: redis.Redis | None) -> VisitQueue:
    """Build the queue selected by ``queue_backend``.

    When the Redis backend is selected but unreachable, falls back to the
    inline queue if ``queue_fallback_to_inline`` is set and raises
    ``QueueUnavailableError`` otherwise.
    """
    if settings.queue_backend == "inline":
        return InlineVisitQueue(max_attempts=settings.inline_queue_max_attempts)

    if client is not None and await ping(client):
        return RedisStreamVisitQueue.from_settings(client, settings)

    if settings.queue_fallback_to_inline:
        logger.warning(
            "Redis unavailable, falling back to inline visit queue",
            redis_url=settings.redis_url,
        )
        return InlineVisitQueue(max_attempts=settings.inline_queue_max_attempts)

    raise QueueUnavailableError(settings.queue_backend)
