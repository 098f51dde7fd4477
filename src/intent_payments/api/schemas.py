from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from intent_payments.domain.models import FeeQuote, Payment


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PartyIn(CamelModel):
    address: str = Field(min_length=1)
    chain_id: str = Field(min_length=1)


class AssetAmountIn(CamelModel):
    """Either ``amount`` in smallest units or a human ``decimalAmount``."""

    asset_id: str = Field(min_length=1)
    amount: str | None = Field(default=None, pattern=r"^[0-9]+$")
    decimal_amount: str | None = Field(default=None, pattern=r"^[0-9]+(\.[0-9]+)?$")

    @model_validator(mode="after")
    def exactly_one_amount(self) -> Self:
        if (self.amount is None) == (self.decimal_amount is None):
            raise ValueError("Provide exactly one of amount or decimalAmount")
        return self


class PaymentRequestIn(CamelModel):
    payer: PartyIn
    recipient: PartyIn
    asset: AssetAmountIn
    memo: str | None = Field(default=None, max_length=256)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=255)


class PrepareRequest(CamelModel):
    request: PaymentRequestIn


class SubmitRequest(CamelModel):
    payment_id: str = Field(min_length=1)
    signed_payload: dict[str, Any] | str


class PartyOut(CamelModel):
    address: str
    chain_id: str


class AssetAmountOut(CamelModel):
    asset_id: str
    amount: str


class PaymentRequestOut(CamelModel):
    payer: PartyOut
    recipient: PartyOut
    asset: AssetAmountOut
    memo: str | None = None
    idempotency_key: str


class SettlementRefOut(CamelModel):
    chain_id: str
    tx_hash: str


class FeeLineOut(CamelModel):
    label: str
    amount: AssetAmountOut


class FeeQuoteOut(CamelModel):
    total_fee: AssetAmountOut
    breakdown: list[FeeLineOut] = Field(default_factory=list)
    quote_id: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_domain(cls, quote: FeeQuote) -> Self:
        return cls(
            total_fee=AssetAmountOut(asset_id=quote.total_fee.asset_id, amount=quote.total_fee.amount),
            breakdown=[
                FeeLineOut(
                    label=line.label,
                    amount=AssetAmountOut(asset_id=line.amount.asset_id, amount=line.amount.amount),
                )
                for line in quote.breakdown
            ],
            quote_id=quote.quote_id,
            expires_at=quote.expires_at,
        )


class PaymentOut(CamelModel):
    payment_id: str
    status: str
    request: PaymentRequestOut
    settlement_refs: list[SettlementRefOut] = Field(default_factory=list)
    provider_ref: str | None = None
    fee_quote: FeeQuoteOut | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, payment: Payment) -> Self:
        request = payment.request
        return cls(
            payment_id=payment.id,
            status=payment.status.value,
            request=PaymentRequestOut(
                payer=PartyOut(address=request.payer.address, chain_id=request.payer.chain_id),
                recipient=PartyOut(address=request.recipient.address, chain_id=request.recipient.chain_id),
                asset=AssetAmountOut(asset_id=request.asset.asset_id, amount=request.asset.amount),
                memo=request.memo,
                idempotency_key=request.idempotency_key,
            ),
            settlement_refs=[SettlementRefOut(chain_id=s.chain_id, tx_hash=s.tx_hash) for s in payment.settlement],
            provider_ref=payment.provider_ref,
            fee_quote=FeeQuoteOut.from_domain(payment.fee_quote) if payment.fee_quote else None,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class PaymentResponse(CamelModel):
    payment: PaymentOut


class PrepareResponse(CamelModel):
    payment: PaymentOut
    fee_quote: FeeQuoteOut | None = None


class ErrorResponse(CamelModel):
    code: str
    message: str
    retryable: bool | None = None


class WebhookAck(CamelModel):
    ok: bool = True
    reason: str | None = None
    used: str | None = None
    found: bool = False
    upstream: str | None = None
    local: str | None = None
    mutated: bool = False
    tx_id: str | None = None


def dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)
