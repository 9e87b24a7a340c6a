"""Entry point for the multi-chain burn indexer."""

import asyncio
import logging
import signal

from prometheus_client import start_http_server

from burn_indexer.config import Settings, get_settings
from burn_indexer.manager import IndexerManager

logger = logging.getLogger(__name__)


async def run(settings: Settings):
    """Run the indexers until SIGINT or SIGTERM, then shut down in order."""
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics available on port {settings.metrics_port}")

    manager = IndexerManager(settings)
    stop_event = asyncio.Event()

    def request_shutdown(sig: signal.Signals):
        logger.info(f"Received {sig.name}, shutting down...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_shutdown, sig)

    await manager.start()
    try:
        await stop_event.wait()
    finally:
        await manager.stop()


def main():
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    logger.info("Starting burn indexer...")
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
