"""Standalone visit consumer.

Runs the aggregator against the durable queue in its own process, so the
API can be deployed with ``LINKPULSE_CONSUME_IN_PROCESS=false``.

    python -m linkpulse.worker
"""

import asyncio
import signal

import structlog

from linkpulse.core.config import Settings, get_settings
from linkpulse.core.lifecycle import Components
from linkpulse.core.observability import configure_structlog

logger = structlog.get_logger()


async def run_worker(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Consume visits until ``stop_event`` is set (SIGINT/SIGTERM by default)."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread
            pass

    components = await Components.create(settings)
    if components.queue.backend == "inline":
        logger.warning("Worker started without a durable queue; it will receive no visits")

    await components.start(consume=True)
    logger.info("Visit worker started", queue=components.queue.backend)
    try:
        await stop_event.wait()
    finally:
        logger.info("Visit worker stopping", **components.queue.stats)
        await components.close()


def main() -> None:
    settings = get_settings()
    configure_structlog(settings)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
