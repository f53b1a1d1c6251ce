from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from training_worker.core.config import get_settings
from training_worker.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from training_worker.dependencies import get_repository, get_worker

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    if not settings.database_url:
        logger.warning("standalone worker without TW_DATABASE_URL only sees jobs enqueued in this process")

    repository = get_repository()
    worker = get_worker()
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop_requested.set)

    try:
        await worker.start()
        await stop_requested.wait()
    finally:
        await worker.stop()
        await worker.join()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
