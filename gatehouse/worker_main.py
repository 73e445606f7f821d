"""
Standalone outbox worker process.

Reads its configuration from ``GATEHOUSE_*`` environment variables, runs the
outbox worker under uvloop and shuts down gracefully on SIGINT / SIGTERM::

    GATEHOUSE_DATABASE_URL=postgresql+asyncpg://... \\
    GATEHOUSE_BROKER_URL=http://broker-ingress.knative-eventing.svc.cluster.local/default/default \\
    gatehouse-worker
"""

import asyncio
import logging
import os
import signal

import uvloop

from gatehouse.app import GatehouseApp
from gatehouse.config import GatehouseConfig

logger = logging.getLogger(__name__)


async def run_worker(config: GatehouseConfig) -> None:
    """Run the outbox worker until a termination signal arrives."""
    if not config.broker_url:
        logger.warning("GATEHOUSE_BROKER_URL is not set; events without a handler will fail")

    app = GatehouseApp.from_config(config, outbox_enabled=True)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await app.initialize()
    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await app.shutdown()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("GATEHOUSE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvloop.run(run_worker(GatehouseConfig.from_env()))


if __name__ == "__main__":
    main()
