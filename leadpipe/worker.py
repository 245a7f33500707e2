from __future__ import annotations

import asyncio
import logging
import signal

from leadpipe.core.config import get_settings
from leadpipe.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from leadpipe.pipeline import Pipeline

logger = logging.getLogger(__name__)


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))


async def run_worker(stop: asyncio.Event | None = None) -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    pipeline = Pipeline.build(settings)
    stop = stop or asyncio.Event()
    install_signal_handlers(stop)

    try:
        await pipeline.start()
        logger.info("worker process running component=worker environment=%s", settings.environment)
        await stop.wait()
        logger.info("shutdown requested component=worker")
    finally:
        await pipeline.shutdown()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
