import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from intent_payments.domain.models import (
    AssetAmount,
    FeeLine,
    FeeQuote,
    Party,
    Payment,
    PaymentRequest,
    PaymentStatus,
    SettlementRef,
)


PAYMENT_COLUMNS = """
    id, merchant_id, status, payer_address, payer_chain_id,
    recipient_address, recipient_chain_id, asset_id, amount_value, memo,
    idempotency_key, provider_ref, provider_ref_kind, quote_id, fee_quote, settlement_refs,
    failure_reason, execution_attempts, next_attempt_at, created_at, updated_at
"""

# The reference kind always moves together with the reference it describes.
PROVIDER_REF_ASSIGNMENT = """
    provider_ref_kind = CASE WHEN CAST(:provider_ref AS VARCHAR) IS NULL
                             THEN provider_ref_kind
                             ELSE CAST(:provider_ref_kind AS VARCHAR) END,
    provider_ref = COALESCE(CAST(:provider_ref AS VARCHAR), provider_ref)
"""


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_fee_quote(fee_quote: FeeQuote | None) -> str | None:
    if fee_quote is None:
        return None
    return json.dumps(
        {
            "total_fee": {"asset_id": fee_quote.total_fee.asset_id, "amount": fee_quote.total_fee.amount},
            "breakdown": [
                {"label": line.label, "asset_id": line.amount.asset_id, "amount": line.amount.amount}
                for line in fee_quote.breakdown
            ],
            "quote_id": fee_quote.quote_id,
            "expires_at": fee_quote.expires_at.isoformat() if fee_quote.expires_at else None,
        }
    )


def _load_fee_quote(value: Any) -> FeeQuote | None:
    data = _load_json(value)
    if not data:
        return None
    expires_at = data.get("expires_at")
    return FeeQuote(
        total_fee=AssetAmount(data["total_fee"]["asset_id"], data["total_fee"]["amount"]),
        breakdown=tuple(
            FeeLine(label=line["label"], amount=AssetAmount(line["asset_id"], line["amount"]))
            for line in data.get("breakdown", [])
        ),
        quote_id=data.get("quote_id"),
        expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
    )


def _dump_settlement(refs: Sequence[SettlementRef] | None) -> str | None:
    if not refs:
        return None
    return json.dumps([{"chain_id": ref.chain_id, "tx_hash": ref.tx_hash} for ref in refs])


def _load_settlement(value: Any) -> list[SettlementRef]:
    data = _load_json(value) or []
    return [SettlementRef(chain_id=item["chain_id"], tx_hash=item["tx_hash"]) for item in data]


def _row_to_payment(row: Row[Any]) -> Payment:
    return Payment(
        id=row.id,
        merchant_id=row.merchant_id,
        status=PaymentStatus(row.status),
        request=PaymentRequest(
            payer=Party(address=row.payer_address, chain_id=row.payer_chain_id),
            recipient=Party(address=row.recipient_address, chain_id=row.recipient_chain_id),
            asset=AssetAmount(asset_id=row.asset_id, amount=row.amount_value),
            memo=row.memo,
            idempotency_key=row.idempotency_key,
        ),
        settlement=_load_settlement(row.settlement_refs),
        provider_ref=row.provider_ref,
        provider_ref_kind=row.provider_ref_kind,
        quote_id=row.quote_id,
        fee_quote=_load_fee_quote(row.fee_quote),
        failure_reason=row.failure_reason,
        execution_attempts=row.execution_attempts,
        next_attempt_at=row.next_attempt_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class PaymentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _fetch_one(self, where: str, params: dict[str, Any]) -> Payment | None:
        result = await self._session.execute(
            text(f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE {where} LIMIT 1"),
            params,
        )
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def get(self, payment_id: str) -> Payment | None:
        return await self._fetch_one("id = :id", {"id": payment_id})

    async def get_for_merchant(self, merchant_id: str, payment_id: str) -> Payment | None:
        return await self._fetch_one(
            "id = :id AND merchant_id = :merchant_id",
            {"id": payment_id, "merchant_id": merchant_id},
        )

    async def get_by_natural_key(self, merchant_id: str, idempotency_key: str) -> Payment | None:
        return await self._fetch_one(
            "merchant_id = :merchant_id AND idempotency_key = :key",
            {"merchant_id": merchant_id, "key": idempotency_key},
        )

    async def get_by_reference(self, reference: str) -> Payment | None:
        """Find a payment by its own id or by the provider assigned reference."""
        return await self._fetch_one(
            "id = :ref OR provider_ref = :ref ORDER BY created_at",
            {"ref": reference},
        )

    async def get_by_quote_id(self, quote_id: str) -> Payment | None:
        return await self._fetch_one("quote_id = :quote_id ORDER BY created_at", {"quote_id": quote_id})

    async def reserve(self, payment: Payment) -> bool:
        """Insert ``payment`` unless its (merchant_id, idempotency_key) is taken.

        Returns True when this call created the row.
        """
        result = await self._session.execute(
            text("""
                INSERT INTO payments
                    (id, merchant_id, status, payer_address, payer_chain_id,
                     recipient_address, recipient_chain_id, asset_id, amount_value, memo,
                     idempotency_key, provider_ref, provider_ref_kind, quote_id, fee_quote, settlement_refs,
                     failure_reason, execution_attempts, next_attempt_at, created_at, updated_at)
                VALUES
                    (:id, :merchant_id, :status, :payer_address, :payer_chain_id,
                     :recipient_address, :recipient_chain_id, :asset_id, :amount_value, :memo,
                     :idempotency_key, :provider_ref, :provider_ref_kind, :quote_id, CAST(:fee_quote AS JSONB),
                     CAST(:settlement_refs AS JSONB), :failure_reason, :execution_attempts,
                     :next_attempt_at, :created_at, :updated_at)
                ON CONFLICT (merchant_id, idempotency_key) DO NOTHING
                RETURNING id
            """),
            {
                "id": payment.id,
                "merchant_id": payment.merchant_id,
                "status": payment.status.value,
                "payer_address": payment.request.payer.address,
                "payer_chain_id": payment.request.payer.chain_id,
                "recipient_address": payment.request.recipient.address,
                "recipient_chain_id": payment.request.recipient.chain_id,
                "asset_id": payment.request.asset.asset_id,
                "amount_value": payment.request.asset.amount,
                "memo": payment.request.memo,
                "idempotency_key": payment.request.idempotency_key,
                "provider_ref": payment.provider_ref,
                "provider_ref_kind": payment.provider_ref_kind,
                "quote_id": payment.quote_id,
                "fee_quote": _dump_fee_quote(payment.fee_quote),
                "settlement_refs": _dump_settlement(payment.settlement),
                "failure_reason": payment.failure_reason,
                "execution_attempts": payment.execution_attempts,
                "next_attempt_at": payment.next_attempt_at,
                "created_at": payment.created_at,
                "updated_at": payment.updated_at,
            },
        )
        return result.fetchone() is not None

    async def record_execution(
        self,
        payment_id: str,
        provider_ref: str | None,
        quote_id: str | None = None,
        fee_quote: FeeQuote | None = None,
        provider_ref_kind: str | None = None,
    ) -> Payment | None:
        """Attach provider references (and the fee quote, if any) to a payment that is still pending."""
        result = await self._session.execute(
            text(f"""
                UPDATE payments
                SET {PROVIDER_REF_ASSIGNMENT},
                    quote_id = COALESCE(:quote_id, quote_id),
                    fee_quote = COALESCE(CAST(:fee_quote AS JSONB), fee_quote),
                    updated_at = :updated_at
                WHERE id = :id AND status = 'PENDING'
                RETURNING {PAYMENT_COLUMNS}
            """),
            {
                "id": payment_id,
                "provider_ref": provider_ref,
                "provider_ref_kind": provider_ref_kind,
                "quote_id": quote_id,
                "fee_quote": _dump_fee_quote(fee_quote),
                "updated_at": datetime.now(UTC),
            },
        )
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def transition(
        self,
        payment_id: str,
        to_status: PaymentStatus,
        settlement: Sequence[SettlementRef] | None = None,
        provider_ref: str | None = None,
        failure_reason: str | None = None,
        provider_ref_kind: str | None = None,
    ) -> Payment | None:
        """Compare-and-set PENDING -> ``to_status`` in a single statement.

        Returns the updated payment, or None when the payment is no longer PENDING
        (another path already finalized it) or does not exist.
        """
        if not to_status.is_terminal:
            raise ValueError(f"Cannot transition to non-terminal status {to_status.value}")

        result = await self._session.execute(
            text(f"""
                UPDATE payments
                SET status = :to_status,
                    settlement_refs = COALESCE(CAST(:settlement_refs AS JSONB), settlement_refs),
                    {PROVIDER_REF_ASSIGNMENT},
                    failure_reason = :failure_reason,
                    updated_at = :updated_at
                WHERE id = :id AND status = 'PENDING'
                RETURNING {PAYMENT_COLUMNS}
            """),
            {
                "id": payment_id,
                "to_status": to_status.value,
                "settlement_refs": _dump_settlement(settlement),
                "provider_ref": provider_ref,
                "provider_ref_kind": provider_ref_kind,
                "failure_reason": failure_reason,
                "updated_at": datetime.now(UTC),
            },
        )
        row = result.fetchone()
        return _row_to_payment(row) if row else None

    async def claim_pending(self, limit: int, lease_until: datetime) -> list[Payment]:
        """Lease a batch of due PENDING payments to the calling reconciler.

        Rows locked by another reconciler are skipped; the lease pushes
        ``next_attempt_at`` forward so a crashed worker's batch is picked up later.
        """
        result = await self._session.execute(
            text(f"""
                UPDATE payments
                SET execution_attempts = execution_attempts + 1,
                    next_attempt_at = :lease_until
                WHERE id IN (
                    SELECT id FROM payments
                    WHERE status = 'PENDING'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= :now)
                    ORDER BY next_attempt_at NULLS FIRST, created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {PAYMENT_COLUMNS}
            """),
            {"limit": limit, "now": datetime.now(UTC), "lease_until": lease_until},
        )
        return [_row_to_payment(row) for row in result.fetchall()]

    async def schedule_next_attempt(self, payment_id: str, next_attempt_at: datetime) -> None:
        await self._session.execute(
            text("""
                UPDATE payments
                SET next_attempt_at = :next_attempt_at
                WHERE id = :id AND status = 'PENDING'
            """),
            {"id": payment_id, "next_attempt_at": next_attempt_at},
        )

    async def expire_pending_before(self, cutoff: datetime, limit: int) -> list[str]:
        """Move PENDING payments created before ``cutoff`` to EXPIRED."""
        result = await self._session.execute(
            text("""
                UPDATE payments
                SET status = 'EXPIRED',
                    failure_reason = 'EXPIRED_UNCONFIRMED',
                    updated_at = :now
                WHERE id IN (
                    SELECT id FROM payments
                    WHERE status = 'PENDING' AND created_at < :cutoff
                    ORDER BY created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                AND status = 'PENDING'
                RETURNING id
            """),
            {"cutoff": cutoff, "limit": limit, "now": datetime.now(UTC)},
        )
        return [row.id for row in result.fetchall()]
