"""Repository implementations."""

from intent_payments.infrastructure.repositories.api_keys import ApiKeyRepository
from intent_payments.infrastructure.repositories.idempotency import IdempotencyRepository
from intent_payments.infrastructure.repositories.payment import PaymentRepository
from intent_payments.infrastructure.repositories.webhook_deliveries import WebhookDeliveryRepository


__all__ = [
    "ApiKeyRepository",
    "IdempotencyRepository",
    "PaymentRepository",
    "WebhookDeliveryRepository",
]
