"""
Application entry point: wires dependencies and starts the scheduler.

Composition root: creates concrete adapters, injects them into the
services, and hands the sync runner to the scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Apply the schema and create concrete adapters (Exchange registry, psycopg repositories)
  4. Wire the services (submission facade, sync runner)
  5. Run the AsyncIOScheduler until SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

import structlog

from ksef_client import __version__
from ksef_client.adapters.exchange import ExchangeRegistry
from ksef_client.adapters.repository import (
    PsycopgDocumentStore,
    PsycopgSubmissionLedger,
    PsycopgSyncCursorStore,
    PsycopgSyncRunLog,
    PsycopgTenantDirectory,
)
from ksef_client.adapters.schema import apply_schema
from ksef_client.config import AppSettings
from ksef_client.domain.models import FormCode
from ksef_client.polling import PollPolicy
from ksef_client.retry import RetryGovernor
from ksef_client.scheduler import create_scheduler
from ksef_client.services.duplicates import DuplicateDetector
from ksef_client.services.submission import SubmissionService
from ksef_client.sync import SyncRunner


def configure_structlog(log_level: str = "INFO") -> None:
    """Configure structlog for structured, human-readable console logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Services:
    registry: ExchangeRegistry
    detector: DuplicateDetector
    submissions: SubmissionService
    sync: SyncRunner
    tenants: PsycopgTenantDirectory
    cursors: PsycopgSyncCursorStore


def create_services(settings: AppSettings) -> Services:
    """Instantiate every adapter and service from application settings."""
    dsn = settings.database.get_dsn()
    governor = RetryGovernor(
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay_seconds,
        max_delay=settings.retry.max_delay_seconds,
    )
    registry = ExchangeRegistry(
        url_for=settings.exchange.url_for,
        governor=governor,
        timeout=settings.exchange.timeout_seconds,
    )
    polling = settings.polling
    auth_polling = PollPolicy(polling.auth_max_attempts, polling.auth_delay_seconds)
    session_polling = PollPolicy(polling.session_max_attempts, polling.session_delay_seconds)
    export_polling = PollPolicy(polling.export_max_attempts, polling.export_delay_seconds)

    detector = DuplicateDetector(PsycopgSubmissionLedger(dsn))
    submissions = SubmissionService(
        bindings=registry.binding,
        detector=detector,
        form=FormCode(
            system_code=settings.exchange.form_system_code,
            schema_version=settings.exchange.form_schema_version,
            value=settings.exchange.form_value,
        ),
        auth_polling=auth_polling,
        session_polling=session_polling,
        system_info=settings.exchange.system_info,
    )

    tenants = PsycopgTenantDirectory(dsn, settings.database.credential_key.get_secret_value())
    cursors = PsycopgSyncCursorStore(dsn)
    sync = SyncRunner(
        tenants=tenants,
        cursors=cursors,
        documents=PsycopgDocumentStore(dsn),
        run_log=PsycopgSyncRunLog(dsn),
        bindings=registry.binding,
        subject_types=settings.sync.subject_types,
        max_concurrent=settings.sync.max_concurrent_tenants,
        batch_size=settings.sync.batch_size,
        batch_delay=settings.sync.batch_delay_seconds,
        initial_lookback_days=settings.sync.initial_lookback_days,
        retrieval_mode=settings.sync.retrieval_mode,
        page_size=settings.sync.page_size,
        auth_polling=auth_polling,
        export_polling=export_polling,
    )
    return Services(
        registry=registry,
        detector=detector,
        submissions=submissions,
        sync=sync,
        tenants=tenants,
        cursors=cursors,
    )


async def serve(settings: AppSettings) -> None:
    """Run the scheduled sync until SIGINT/SIGTERM, then shut down cleanly."""
    log = structlog.get_logger()
    if settings.database.apply_schema:
        await apply_schema(settings.database.get_dsn())
        log.info("app.schema_applied")
    services = create_services(settings)
    scheduler = create_scheduler(
        sync_fn=services.sync.run,
        interval_minutes=settings.sync.interval_minutes,
        run_on_startup=settings.run_on_startup,
        purge_fn=services.detector.purge_expired,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    log.info("app.scheduler_started", interval_minutes=settings.sync.interval_minutes)
    try:
        await stop.wait()
        log.info("app.shutdown", reason="signal received")
    finally:
        scheduler.shutdown(wait=False)
        await services.registry.aclose()
        log.info("app.shutdown_complete")


def main() -> None:
    """Load settings, configure logging and run the scheduler."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error: {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        environment=settings.exchange.environment.value,
        interval_minutes=settings.sync.interval_minutes,
        run_on_startup=settings.run_on_startup,
    )

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="keyboard interrupt")
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
