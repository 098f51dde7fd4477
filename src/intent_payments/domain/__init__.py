"""Domain layer - business entities and rules."""

from intent_payments.domain.exceptions import (
    AuthError,
    ConflictError,
    DomainError,
    ForbiddenError,
    IdempotencyKeyReusedError,
    InternalError,
    InvalidAmountError,
    NotFoundError,
    PaymentAlreadyFinalizedError,
    PaymentNotFoundError,
    ProviderError,
    RateLimitError,
    SignatureError,
    ValidationError,
    WebhookPayloadError,
)
from intent_payments.domain.models import (
    ApiKey,
    ApiKeyType,
    AssetAmount,
    CanonicalStatus,
    FeeLine,
    FeeQuote,
    IdempotencyRecord,
    Party,
    Payment,
    PaymentRequest,
    PaymentStatus,
    SettlementRef,
    WebhookDelivery,
    WebhookEvent,
)
from intent_payments.domain.status import map_status
from intent_payments.domain.webhook import normalize_webhook


__all__ = [
    "ApiKey",
    "ApiKeyType",
    "AssetAmount",
    "AuthError",
    "CanonicalStatus",
    "ConflictError",
    "DomainError",
    "FeeLine",
    "FeeQuote",
    "ForbiddenError",
    "IdempotencyKeyReusedError",
    "IdempotencyRecord",
    "InternalError",
    "InvalidAmountError",
    "NotFoundError",
    "Party",
    "Payment",
    "PaymentAlreadyFinalizedError",
    "PaymentNotFoundError",
    "PaymentRequest",
    "PaymentStatus",
    "ProviderError",
    "RateLimitError",
    "SettlementRef",
    "SignatureError",
    "ValidationError",
    "WebhookDelivery",
    "WebhookEvent",
    "WebhookPayloadError",
    "map_status",
    "normalize_webhook",
]
