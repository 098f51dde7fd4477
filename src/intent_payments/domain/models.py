from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from ulid import ULID


class PaymentStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class CanonicalStatus(Enum):
    """Closed vocabulary the open set of upstream status strings maps onto."""

    PAID = "PAID"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"

    @property
    def payment_status(self) -> PaymentStatus | None:
        return _CANONICAL_TO_PAYMENT[self]


_CANONICAL_TO_PAYMENT: dict[CanonicalStatus, PaymentStatus | None] = {
    CanonicalStatus.PAID: PaymentStatus.SUCCESS,
    CanonicalStatus.FAILED: PaymentStatus.FAILED,
    CanonicalStatus.EXPIRED: PaymentStatus.EXPIRED,
    CanonicalStatus.PENDING: None,
}


class ApiKeyType(Enum):
    PUBLISHABLE = "publishable"
    SECRET = "secret"


@dataclass(frozen=True)
class Party:
    address: str
    chain_id: str


@dataclass(frozen=True)
class AssetAmount:
    """An amount of an asset in its smallest unit, as an integer decimal string."""

    asset_id: str
    amount: str

    def __post_init__(self) -> None:
        if not self.asset_id:
            raise ValueError("Asset id is required")
        if not self.amount.isdigit() or not self.amount.isascii():
            raise ValueError("Amount must be a string integer in smallest units")


@dataclass(frozen=True)
class PaymentRequest:
    payer: Party
    recipient: Party
    asset: AssetAmount
    idempotency_key: str
    memo: str | None = None


@dataclass(frozen=True)
class SettlementRef:
    chain_id: str
    tx_hash: str


@dataclass(frozen=True)
class FeeLine:
    label: str
    amount: AssetAmount


@dataclass(frozen=True)
class FeeQuote:
    total_fee: AssetAmount
    breakdown: tuple[FeeLine, ...] = ()
    quote_id: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


@dataclass
class Payment:
    id: str
    merchant_id: str
    status: PaymentStatus
    request: PaymentRequest
    settlement: list[SettlementRef] = field(default_factory=list)
    provider_ref: str | None = None
    provider_ref_kind: str | None = None
    quote_id: str | None = None
    fee_quote: FeeQuote | None = None
    failure_reason: str | None = None
    execution_attempts: int = 0
    next_attempt_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        merchant_id: str,
        request: PaymentRequest,
        fee_quote: FeeQuote | None = None,
        reconcile_after: timedelta = timedelta(seconds=30),
    ) -> "Payment":
        now = datetime.now(UTC)
        return cls(
            id=f"pay_{ULID()}",
            merchant_id=merchant_id,
            status=PaymentStatus.PENDING,
            request=request,
            fee_quote=fee_quote,
            quote_id=fee_quote.quote_id if fee_quote else None,
            next_attempt_at=now + reconcile_after,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class IdempotencyRecord:
    key: str
    status_code: int
    response_body: dict[str, Any]
    request_fingerprint: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None


@dataclass(frozen=True)
class WebhookEvent:
    order_id: str | None
    quote_id: str | None
    tx_id: str | None
    upstream_status: str


@dataclass
class ApiKey:
    id: str
    merchant_id: str
    type: ApiKeyType
    scopes: list[str]
    secret: str | None = None
    revoked_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass
class WebhookDelivery:
    id: str
    source: str
    payload: str
    signature: str | None
    outcome: str
    reason: str | None = None
    payment_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        source: str,
        payload: str,
        signature: str | None,
        outcome: str,
        reason: str | None = None,
        payment_id: str | None = None,
    ) -> "WebhookDelivery":
        return cls(
            id=str(ULID()),
            source=source,
            payload=payload,
            signature=signature,
            outcome=outcome,
            reason=reason,
            payment_id=payment_id,
        )
