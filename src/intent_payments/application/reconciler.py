import asyncio
import random
from datetime import UTC, datetime, timedelta

import structlog

from intent_payments.application.services import PaymentOrchestrator
from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.config import settings
from intent_payments.domain.exceptions import ProviderError
from intent_payments.domain.models import Payment
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.metrics import RECONCILER_PENDING_PAYMENTS
from intent_payments.infrastructure.provider_client import IntentsProviderClient


logger = structlog.get_logger()


class PaymentReconciler:
    """
    Drives PENDING payments to a terminal state when webhooks do not arrive.

    Each batch:
    - Expires payments older than the expiry window
    - Re-executes payments that never got a provider reference
    - Polls the provider for payments that have one
    - Reschedules failures with exponential backoff and jitter
    - Stops after too many consecutive batch failures (circuit breaker)
    """

    MAX_CONSECUTIVE_FAILURES = 10
    LEASE_SECONDS = 60.0

    def __init__(
        self,
        database: Database,
        provider: IntentsProviderClient,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        expiry_seconds: int | None = None,
    ) -> None:
        self._database = database
        self._provider = provider
        self._batch_size = batch_size or settings.reconciler_batch_size
        self._poll_interval = poll_interval or settings.reconciler_poll_interval_seconds
        self._max_retries = max_retries or settings.reconciler_max_retries
        self._base_delay = base_delay or settings.reconciler_base_delay_seconds
        self._max_delay = max_delay or settings.reconciler_max_delay_seconds
        self._expiry = timedelta(seconds=expiry_seconds or settings.payment_expiry_seconds)
        self._running = False
        self._consecutive_failures = 0

    async def start(self) -> None:
        """Start the reconciler loop."""
        self._running = True
        self._consecutive_failures = 0
        logger.info("reconciler_started", batch_size=self._batch_size, expiry_seconds=self._expiry.total_seconds())

        try:
            while self._running:
                try:
                    processed_count = await self.run_once()
                    self._consecutive_failures = 0
                    if processed_count == 0:
                        await asyncio.sleep(self._poll_interval)
                except Exception as e:
                    self._consecutive_failures += 1
                    logger.error(
                        "reconciler_batch_error",
                        error=str(e),
                        consecutive_failures=self._consecutive_failures,
                        exc_info=True,
                    )
                    if self._consecutive_failures >= self.MAX_CONSECUTIVE_FAILURES:
                        logger.critical(
                            "circuit_breaker_triggered",
                            consecutive_failures=self._consecutive_failures,
                            action="stopping_reconciler",
                        )
                        break
                    await asyncio.sleep(self._poll_interval)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the reconciler gracefully."""
        self._running = False
        logger.info("reconciler_stopped")

    async def run_once(self) -> int:
        """Run one expiry sweep and one reconciliation batch.

        Returns:
            Number of payments expired or examined.
        """
        async with self._database.session() as session:
            orchestrator = PaymentOrchestrator(UnitOfWork(session), self._provider, quote_fees=False)
            expired = await orchestrator.expire_stale(self._expiry, limit=self._batch_size)

            lease_until = datetime.now(UTC) + timedelta(seconds=self.LEASE_SECONDS)
            async with orchestrator.uow:
                payments = await orchestrator.uow.payments.claim_pending(self._batch_size, lease_until)
                await orchestrator.uow.commit()

            RECONCILER_PENDING_PAYMENTS.set(len(payments))
            for payment in payments:
                await self._reconcile_payment(orchestrator, payment)

        return len(expired) + len(payments)

    async def _reconcile_payment(self, orchestrator: PaymentOrchestrator, payment: Payment) -> None:
        log = logger.bind(payment_id=payment.id, attempt=payment.execution_attempts)
        try:
            if payment.provider_ref:
                updated = await orchestrator.sync_status(payment, source="poll")
            elif payment.execution_attempts > self._max_retries:
                log.warning("execution_retries_exhausted", max_retries=self._max_retries)
                await self._schedule(orchestrator, payment, self._max_delay)
                return
            else:
                updated = await orchestrator.retry_execution(payment)
        except ProviderError as e:
            delay = self._calculate_backoff_delay(payment.execution_attempts)
            log.warning(
                "payment_reconcile_retry_scheduled",
                error_code=e.code,
                retryable=e.retryable,
                next_delay_seconds=delay,
            )
            await self._schedule(orchestrator, payment, delay)
            return

        if updated.is_terminal:
            log.info("payment_reconciled", status=updated.status.value)
            return
        await self._schedule(orchestrator, updated, self._calculate_backoff_delay(payment.execution_attempts))

    async def _schedule(self, orchestrator: PaymentOrchestrator, payment: Payment, delay: float) -> None:
        async with orchestrator.uow:
            await orchestrator.uow.payments.schedule_next_attempt(
                payment.id,
                datetime.now(UTC) + timedelta(seconds=delay),
            )
            await orchestrator.uow.commit()

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay: float = min(
            self._base_delay * (2**retry_count),
            self._max_delay,
        )
        jitter: float = random.uniform(0, delay * 0.1)
        return delay + jitter
