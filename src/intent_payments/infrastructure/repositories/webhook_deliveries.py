from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from intent_payments.domain.models import WebhookDelivery


class WebhookDeliveryRepository:
    """Operator log of inbound provider webhooks and what was done with them."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, delivery: WebhookDelivery) -> None:
        await self._session.execute(
            text("""
                INSERT INTO webhook_deliveries
                    (id, source, payload, signature, outcome, reason, payment_id, created_at)
                VALUES
                    (:id, :source, :payload, :signature, :outcome, :reason, :payment_id, :created_at)
            """),
            {
                "id": delivery.id,
                "source": delivery.source,
                "payload": delivery.payload,
                "signature": delivery.signature,
                "outcome": delivery.outcome,
                "reason": delivery.reason,
                "payment_id": delivery.payment_id,
                "created_at": delivery.created_at,
            },
        )
