from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.domain.exceptions import (
    InternalError,
    PaymentAlreadyFinalizedError,
    PaymentNotFoundError,
    ProviderError,
    ProviderNotConfiguredError,
)
from intent_payments.domain.models import (
    CanonicalStatus,
    FeeQuote,
    Payment,
    PaymentRequest,
    PaymentStatus,
    SettlementRef,
    WebhookEvent,
)
from intent_payments.domain.status import map_status
from intent_payments.infrastructure.metrics import (
    PAYMENT_TRANSITION_NOOPS_TOTAL,
    PAYMENT_TRANSITIONS_TOTAL,
)
from intent_payments.infrastructure.provider_client import ExecutionResult, IntentsProviderClient


logger = structlog.get_logger()


ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
ALREADY_FINAL = "ALREADY_FINAL"
NON_TERMINAL_STATUS = "NON_TERMINAL_STATUS"


@dataclass
class PrepareResult:
    payment: Payment
    fee_quote: FeeQuote | None
    created: bool


@dataclass
class ReconcileOutcome:
    found: bool
    used: str | None
    payment_id: str | None
    upstream: str
    canonical: CanonicalStatus
    local: PaymentStatus | None = None
    mutated: bool = False
    reason: str | None = None
    tx_id: str | None = None


class PaymentOrchestrator:
    """Owns every Payment state change.

    Terminal transitions all go through ``PaymentRepository.transition``, a single
    compare-and-set on ``status = 'PENDING'``, so submit, webhooks and polling can race
    without one overwriting another.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        provider: IntentsProviderClient | None = None,
        quote_fees: bool = True,
    ) -> None:
        self.uow = uow
        self.provider = provider
        self.quote_fees = quote_fees

    def _require_provider(self) -> IntentsProviderClient:
        if self.provider is None or not self.provider.is_configured:
            raise ProviderNotConfiguredError("Intent execution provider is not configured")
        return self.provider

    @staticmethod
    def natural_key_lock(merchant_id: str, idempotency_key: str) -> str:
        return f"prepare:{merchant_id}:{idempotency_key}"

    async def prepare(self, merchant_id: str, request: PaymentRequest) -> PrepareResult:
        """Create the payment for (merchant, idempotency key) and start execution.

        The natural-key lock is held until execution is recorded, so a concurrent call
        for the same key waits and then returns the winner's stored payment.
        """
        log = logger.bind(merchant_id=merchant_id, idempotency_key=request.idempotency_key)

        async with self.uow.lock(self.natural_key_lock(merchant_id, request.idempotency_key)):
            async with self.uow:
                existing = await self.uow.payments.get_by_natural_key(merchant_id, request.idempotency_key)
                await self.uow.rollback()
            if existing:
                log.info("payment_prepare_replayed", payment_id=existing.id)
                return PrepareResult(payment=existing, fee_quote=existing.fee_quote, created=False)

            payment = Payment.create(merchant_id=merchant_id, request=request)
            async with self.uow:
                reserved = await self.uow.payments.reserve(payment)
                if not reserved:
                    # Only reachable when the lock is a no-op (no shared database).
                    await self.uow.rollback()
                    winner = await self.uow.payments.get_by_natural_key(merchant_id, request.idempotency_key)
                    await self.uow.rollback()
                    if winner is None:
                        raise InternalError("Payment reservation conflicted but the existing payment is not visible")
                    log.info("payment_prepare_race_lost", payment_id=winner.id)
                    return PrepareResult(payment=winner, fee_quote=winner.fee_quote, created=False)
                await self.uow.commit()

            return await self._execute_prepared(payment, log.bind(payment_id=payment.id))

    async def _execute_prepared(self, payment: Payment, log: structlog.stdlib.BoundLogger) -> PrepareResult:
        log.info("payment_prepared", step="1/2")

        if self.provider is None or not self.provider.is_configured:
            log.warning("payment_execution_deferred", reason="provider_not_configured")
            return PrepareResult(payment=await self._reload(payment), fee_quote=None, created=True)

        fee_quote = await self._quote(payment, log)
        if fee_quote is not None:
            async with self.uow:
                quoted = await self.uow.payments.record_execution(payment.id, None, fee_quote.quote_id, fee_quote)
                await self.uow.commit()
            payment = quoted or payment

        try:
            result = await self.provider.execute(self._execution_payload(payment))
        except ProviderError as e:
            log.warning(
                "payment_execution_deferred",
                error_code=e.code,
                retryable=e.retryable,
                error=e.message,
            )
            payment = await self._reload(payment)
            return PrepareResult(payment=payment, fee_quote=payment.fee_quote, created=True)

        payment = await self._apply_execution(payment, result, source="prepare")
        log.info("payment_execution_started", step="2/2", provider_ref=payment.provider_ref)
        return PrepareResult(payment=payment, fee_quote=payment.fee_quote, created=True)

    async def _quote(self, payment: Payment, log: structlog.stdlib.BoundLogger) -> FeeQuote | None:
        if not self.quote_fees or self.provider is None:
            return None
        try:
            quote = await self.provider.quote(payment.request)
        except ProviderError as e:
            log.warning("fee_quote_unavailable", error_code=e.code, error=e.message)
            return None
        return quote.to_fee_quote(payment.request.asset.asset_id)

    @staticmethod
    def _execution_payload(payment: Payment) -> dict[str, Any]:
        request = payment.request
        payload: dict[str, Any] = {
            "orderId": payment.id,
            "originAsset": request.asset.asset_id,
            "amount": request.asset.amount,
            "refundTo": request.payer.address,
            "originChain": request.payer.chain_id,
            "recipient": request.recipient.address,
            "destinationChain": request.recipient.chain_id,
        }
        if payment.quote_id:
            payload["quoteId"] = payment.quote_id
        if request.memo:
            payload["memo"] = request.memo
        return payload

    async def submit(self, merchant_id: str, payment_id: str, signed_payload: Any) -> Payment:
        log = logger.bind(merchant_id=merchant_id, payment_id=payment_id)

        async with self.uow:
            payment = await self.uow.payments.get_for_merchant(merchant_id, payment_id)
            await self.uow.rollback()

        if payment is None:
            raise PaymentNotFoundError(payment_id)
        if payment.is_terminal:
            raise PaymentAlreadyFinalizedError(payment_id, payment.status.value)

        provider = self._require_provider()
        result = await provider.execute(signed_payload)
        log.info("payment_submitted", provider_ref=result.provider_ref, upstream_status=result.status)
        return await self._apply_execution(payment, result, source="submit")

    async def _apply_execution(
        self,
        payment: Payment,
        result: ExecutionResult,
        source: str,
    ) -> Payment:
        canonical = map_status(result.status)
        target = canonical.payment_status
        if target is None:
            async with self.uow:
                updated = await self.uow.payments.record_execution(
                    payment.id,
                    result.provider_ref,
                    result.quote_id,
                    provider_ref_kind=result.provider_ref_kind,
                )
                await self.uow.commit()
            if updated is None:
                return await self._reload(payment)
            return updated

        updated, _ = await self._finalize(
            payment,
            target,
            source=source,
            tx_hash=result.tx_hash,
            provider_ref=result.provider_ref,
            provider_ref_kind=result.provider_ref_kind,
            failure_reason=f"PROVIDER_{canonical.value}" if target is not PaymentStatus.SUCCESS else None,
        )
        return updated

    async def _finalize(
        self,
        payment: Payment,
        target: PaymentStatus,
        source: str,
        tx_hash: str | None = None,
        provider_ref: str | None = None,
        failure_reason: str | None = None,
        provider_ref_kind: str | None = None,
    ) -> tuple[Payment, bool]:
        """Returns the stored payment and whether this call performed the transition."""
        settlement = None
        if target is PaymentStatus.SUCCESS and tx_hash:
            settlement = [SettlementRef(chain_id=payment.request.recipient.chain_id, tx_hash=tx_hash)]

        async with self.uow:
            updated = await self.uow.payments.transition(
                payment.id,
                target,
                settlement=settlement,
                provider_ref=provider_ref,
                failure_reason=failure_reason,
                provider_ref_kind=provider_ref_kind,
            )
            await self.uow.commit()

        if updated is None:
            PAYMENT_TRANSITION_NOOPS_TOTAL.labels(source=source).inc()
            logger.info("payment_transition_skipped", payment_id=payment.id, target=target.value, source=source)
            return await self._reload(payment), False

        PAYMENT_TRANSITIONS_TOTAL.labels(to_status=target.value, source=source).inc()
        logger.info("payment_transitioned", payment_id=payment.id, to_status=target.value, source=source)
        return updated, True

    async def _reload(self, payment: Payment) -> Payment:
        async with self.uow:
            current = await self.uow.payments.get(payment.id)
            await self.uow.rollback()
        return current or payment

    async def reconcile(self, event: WebhookEvent) -> ReconcileOutcome:
        canonical = map_status(event.upstream_status)
        payment: Payment | None = None
        used: str | None = None

        async with self.uow:
            if event.order_id:
                payment = await self.uow.payments.get_by_reference(event.order_id)
                used = "orderId" if payment else None
            if payment is None and event.quote_id:
                payment = await self.uow.payments.get_by_quote_id(event.quote_id)
                used = "quoteId" if payment else None
            await self.uow.rollback()

        outcome = ReconcileOutcome(
            found=payment is not None,
            used=used,
            payment_id=payment.id if payment else None,
            upstream=event.upstream_status,
            canonical=canonical,
            local=payment.status if payment else None,
            tx_id=event.tx_id,
        )
        if payment is None:
            outcome.reason = ORDER_NOT_FOUND
            logger.info("webhook_order_not_found", order_id=event.order_id, quote_id=event.quote_id)
            return outcome

        target = canonical.payment_status
        if target is None:
            outcome.reason = NON_TERMINAL_STATUS
            return outcome

        updated, applied = await self._finalize(
            payment,
            target,
            source="webhook",
            tx_hash=event.tx_id,
            failure_reason=f"PROVIDER_{canonical.value}" if target is not PaymentStatus.SUCCESS else None,
        )
        outcome.local = updated.status
        outcome.mutated = applied
        if not outcome.mutated:
            outcome.reason = ALREADY_FINAL
        return outcome

    async def get_payment(self, merchant_id: str, payment_id: str) -> Payment:
        async with self.uow:
            payment = await self.uow.payments.get_for_merchant(merchant_id, payment_id)
            await self.uow.rollback()
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def refresh(self, merchant_id: str, payment_id: str) -> Payment:
        """Poll the provider for one payment and apply whatever it reports."""
        payment = await self.get_payment(merchant_id, payment_id)
        if payment.is_terminal or not payment.provider_ref:
            return payment
        return await self.sync_status(payment, source="poll")

    async def sync_status(self, payment: Payment, source: str = "poll") -> Payment:
        provider = self._require_provider()
        if not payment.provider_ref:
            return payment
        status = await provider.fetch_status(payment.provider_ref, payment.provider_ref_kind)
        target = map_status(status.upstream_status).payment_status
        if target is None:
            return payment
        updated, _ = await self._finalize(
            payment,
            target,
            source=source,
            tx_hash=status.tx_hash,
            failure_reason=f"PROVIDER_{target.value}" if target is not PaymentStatus.SUCCESS else None,
        )
        return updated

    async def retry_execution(self, payment: Payment) -> Payment:
        provider = self._require_provider()
        result = await provider.execute(self._execution_payload(payment))
        return await self._apply_execution(payment, result, source="reconciler")

    async def expire_stale(self, older_than: timedelta, limit: int = 100) -> list[str]:
        cutoff = datetime.now(UTC) - older_than
        async with self.uow:
            expired = await self.uow.payments.expire_pending_before(cutoff, limit)
            await self.uow.commit()
        if expired:
            PAYMENT_TRANSITIONS_TOTAL.labels(to_status=PaymentStatus.EXPIRED.value, source="expiry").inc(len(expired))
            logger.info("payments_expired", count=len(expired), cutoff=cutoff.isoformat())
        return expired
