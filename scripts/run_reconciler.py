#!/usr/bin/env python3
"""Payment reconciler entrypoint script.

Runs the PaymentReconciler as a standalone background worker that expires stale
payments, retries provider execution and polls the provider for pending payments.
"""
import asyncio
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from intent_payments.application.reconciler import PaymentReconciler
from intent_payments.config import settings
from intent_payments.infrastructure.database import Database
from intent_payments.logging import configure_logging
from intent_payments.main import build_provider


logger = structlog.get_logger()


async def main() -> None:
    """Main entrypoint for the reconciler."""
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "reconciler_starting",
        database_url=settings.database_url.split("@")[-1],
        provider_configured=bool(settings.provider_base_url),
        batch_size=settings.reconciler_batch_size,
        poll_interval=settings.reconciler_poll_interval_seconds,
        expiry_seconds=settings.payment_expiry_seconds,
    )

    database = Database(settings.database_url)
    provider = build_provider()
    reconciler = PaymentReconciler(database=database, provider=provider)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    reconciler_task = asyncio.create_task(reconciler.start())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        await asyncio.wait({reconciler_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        logger.info("initiating_graceful_shutdown")
        await reconciler.stop()
        for task in (reconciler_task, shutdown_task):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await provider.close()
        await database.close()
        logger.info("reconciler_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
