"""Main entry point for the overview worker."""

import asyncio
import signal
from datetime import timedelta

import asyncpg  # type: ignore[import-not-found,import-untyped]

from flow_overview.config import get_settings
from flow_overview.llm.provider import LLMGateway
from flow_overview.logging import get_logger, setup_logging
from flow_overview.overview.analyzer import Analyzer
from flow_overview.overview.delivery import DeliverySink, HttpDeliverySink, LoggingDeliverySink
from flow_overview.overview.detector import ChangeDetector
from flow_overview.overview.executor import ActionExecutor
from flow_overview.overview.queue import JobRunner, PostgresJobQueue
from flow_overview.overview.scheduler import WorkerScheduler
from flow_overview.overview.sources import PostgresForecastSource, build_entity_stores
from flow_overview.overview.storage import WorkerStateStorage
from flow_overview.overview.stores import PostgresActionItemStore, PostgresNotificationStore


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("flow_overview.main")

    settings = get_settings()
    log.info(
        "starting_flow_overview",
        environment=settings.environment,
        llm_provider=settings.llm_default_provider,
    )

    pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=10)
    log.info("postgres_pool_created")

    storage = WorkerStateStorage()
    await storage.initialize(pool)
    queue = PostgresJobQueue(max_attempts=settings.overview_max_attempts)
    await queue.initialize(pool)

    gateway = LLMGateway.from_settings(settings)

    sink: DeliverySink
    if settings.delivery_url:
        api_key = (
            settings.delivery_api_key.get_secret_value() if settings.delivery_api_key else None
        )
        sink = HttpDeliverySink(settings.delivery_url, api_key)
    else:
        log.warning("delivery_url_not_configured", fallback="logging")
        sink = LoggingDeliverySink()

    scheduler = WorkerScheduler(
        storage,
        ChangeDetector(build_entity_stores(pool), limit=settings.overview_change_limit),
        Analyzer(
            gateway,
            PostgresForecastSource(pool),
            provider=settings.llm_default_provider,
            temperature=settings.overview_temperature,
            summary_limit=settings.overview_summary_limit,
        ),
        ActionExecutor(PostgresActionItemStore(pool), PostgresNotificationStore(pool), sink),
        queue,
        default_cooldown=settings.overview_default_cooldown_seconds,
        poll_interval=settings.overview_poll_interval_seconds,
        unique_within=settings.overview_unique_window_seconds,
    )
    runner = JobRunner(
        queue,
        scheduler,
        batch_size=settings.job_batch_size,
        poll_interval=settings.job_poll_interval_seconds,
        rescue_after=timedelta(seconds=settings.llm_timeout_seconds * 10),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runner.stop)

    try:
        await runner.run_forever()
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        await gateway.close()
        await pool.close()
        log.info("flow_overview_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
