"""
Worker process entry point.

Starts the engine services (queue workers and the cron scheduler) and runs
until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from automation_engine.config import Settings, get_settings
from automation_engine.execution.executor import CredentialSupplier
from automation_engine.execution.modules import ModuleRegistry
from automation_engine.services import EngineServices

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_worker(
    modules: Optional[ModuleRegistry] = None,
    credentials: Optional[CredentialSupplier] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Run a worker until it receives a shutdown signal."""
    settings = settings or get_settings()
    configure_logging(settings)

    services = EngineServices(settings=settings, modules=modules, credentials=credentials)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop, sig, stop_event)

    try:
        await services.start()
        logger.info("Worker running, waiting for jobs")
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await services.stop()


def _request_stop(sig: signal.Signals, stop_event: asyncio.Event) -> None:
    logger.info(f"Received signal {sig.name}, shutting down...")
    stop_event.set()


def main() -> None:
    """Console script: automation-worker."""
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
