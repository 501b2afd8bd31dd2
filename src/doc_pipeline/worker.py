"""Standalone worker process: runs conversion loops without the HTTP API.

Meant for the networked backend, where several worker instances share one
Redis queue and status store.
"""

import asyncio
import signal
import sys

import structlog

from doc_pipeline.config import BACKEND_MEMORY, ConfigError, Settings
from doc_pipeline.conversion import ConversionService, build_store
from doc_pipeline.conversion.adapters import build_converters
from doc_pipeline.logging_config import setup_logging

log = structlog.get_logger(__name__)


async def run_worker(settings: Settings, stop_event: asyncio.Event | None = None) -> None:
    """Run ``settings.workers`` loops until ``stop_event`` is set (or forever)."""
    service = ConversionService(
        build_store(settings),
        build_converters(settings),
        upload_dir=settings.uploads_dir,
        workers=max(settings.workers, 1),
        poll_interval=settings.poll_interval_sec,
        job_timeout=settings.job_timeout_sec,
    )
    stop_event = stop_event or asyncio.Event()
    await service.start()
    try:
        await stop_event.wait()
    finally:
        log.info("Stopping workers")
        await service.stop()


def main() -> None:
    try:
        settings = Settings.from_env().validate()
    except ConfigError as e:
        print(f"FATAL: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(1)
    setup_logging(settings.log_level, settings.log_json)
    if settings.store_backend == BACKEND_MEMORY:
        log.warning("Standalone worker uses the in-memory backend; it will never see tasks from the API process")

    async def _main() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass
        await run_worker(settings, stop_event)

    asyncio.run(_main())


if __name__ == "__main__":
    main()
