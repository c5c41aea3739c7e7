"""Driftwatch - container image update watcher."""

import asyncio
import logging
import signal
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Optional

from driftwatch.config import (
    get_log_level,
    get_registry_configurations,
    get_trigger_configurations,
    get_watcher_configurations,
)
from driftwatch.db import create_engine, create_session_factory, init_db
from driftwatch.services.component_registry import (
    build_runtime,
    deregister_all,
    register_registries,
    register_triggers,
    register_watchers,
)
from driftwatch.services.migrate import migrate_to_current

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_version() -> str:
    """Installed package version."""
    try:
        return package_version("driftwatch")
    except PackageNotFoundError:
        logger.warning("driftwatch package metadata not found")
        return "0.0.0-dev"


async def run(stop_event: Optional[asyncio.Event] = None) -> None:
    """Start every component and run until ``stop_event`` is set.

    SIGINT and SIGTERM set the event when none is given.
    """
    version = get_version()
    logger.info(f"Starting Driftwatch {version}...")

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    engine = create_engine()
    await init_db(engine)
    logger.info("Database initialized")

    runtime = build_runtime(create_session_factory(engine))
    try:
        await runtime.store.load()
        await migrate_to_current(runtime.store, version)

        register_registries(runtime, get_registry_configurations())
        await register_triggers(runtime, get_trigger_configurations())
        await register_watchers(runtime, get_watcher_configurations())
        logger.info("Driftwatch started")

        await stop_event.wait()
    finally:
        logger.info("Shutting down Driftwatch...")
        await deregister_all(runtime)
        await engine.dispose()
        logger.info("Driftwatch stopped")


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
