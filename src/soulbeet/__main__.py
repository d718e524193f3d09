"""Run the acquisition engine as a standalone daemon (`python -m soulbeet`)."""

import asyncio
import logging
import signal
import sys

from soulbeet.config.settings import get_settings
from soulbeet.domain.exceptions import ConfigurationError
from soulbeet.infrastructure.lifecycle import lifespan
from soulbeet.infrastructure.observability.logging import configure_logging

logger = logging.getLogger("soulbeet")


async def run() -> None:
    """Start the engine and block until SIGINT/SIGTERM."""
    settings = get_settings()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass

    async with lifespan(settings) as engine:
        logger.info("Engine running (%s), press Ctrl+C to stop", settings.app_name)
        await stop.wait()
        logger.info("Shutdown requested")
        status = await engine.worker.get_status()
        logger.debug("Final worker status: %s", status)


def main() -> None:
    """Console script entry point."""
    settings = get_settings()
    configure_logging(
        log_level=settings.observability.level,
        json_format=settings.observability.json_format,
        app_name=settings.app_name,
    )
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e.message)
        sys.exit(1)


if __name__ == "__main__":
    main()
