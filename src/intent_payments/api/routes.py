from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from intent_payments.api.dependencies import (
    build_idempotency_guard,
    get_orchestrator,
    get_settings,
    get_token_catalog,
    get_uow,
    require_scopes,
)
from intent_payments.api.schemas import (
    AssetAmountIn,
    FeeQuoteOut,
    PaymentOut,
    PaymentResponse,
    PrepareRequest,
    PrepareResponse,
    SubmitRequest,
    WebhookAck,
    dump,
)
from intent_payments.application.auth import SCOPE_PAYMENTS_READ, SCOPE_PAYMENTS_WRITE, AuthContext
from intent_payments.application.services import PaymentOrchestrator
from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.config import Settings
from intent_payments.domain.exceptions import ValidationError, WebhookPayloadError
from intent_payments.domain.models import AssetAmount, Party, PaymentRequest, WebhookDelivery
from intent_payments.domain.signatures import verify_webhook_signature
from intent_payments.domain.webhook import INVALID_PAYLOAD, NO_ID, normalize_webhook
from intent_payments.infrastructure.metrics import WEBHOOK_EVENTS_TOTAL
from intent_payments.infrastructure.token_catalog import TokenCatalog


logger = structlog.get_logger()

router = APIRouter(prefix="/v1")

INVALID_SIGNATURE = "INVALID_SIGNATURE"
HANDLER_ERROR = "HANDLER_ERROR"
REJECTION_REASONS = frozenset({INVALID_SIGNATURE, INVALID_PAYLOAD, NO_ID, HANDLER_ERROR})
WEBHOOK_SOURCE = "intents"


async def _resolve_amount(asset: AssetAmountIn, catalog: TokenCatalog | None) -> AssetAmount:
    if asset.amount is not None:
        return AssetAmount(asset_id=asset.asset_id, amount=asset.amount)
    if catalog is None:
        raise ValidationError("decimalAmount is not supported without a token catalog", code="UNKNOWN_ASSET")
    if asset.decimal_amount is None:
        raise ValidationError("Provide exactly one of amount or decimalAmount")
    amount = await catalog.to_smallest_units(asset.asset_id, asset.decimal_amount)
    return AssetAmount(asset_id=asset.asset_id, amount=amount)


@router.post("/payments/prepare", status_code=201)
async def prepare_payment(
    body: PrepareRequest,
    request: Request,
    ctx: Annotated[AuthContext, Depends(require_scopes(SCOPE_PAYMENTS_WRITE))],
    uow: Annotated[UnitOfWork, Depends(get_uow)],
    orchestrator: Annotated[PaymentOrchestrator, Depends(get_orchestrator)],
    catalog: Annotated[TokenCatalog | None, Depends(get_token_catalog)],
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> Response:
    body_key = body.request.idempotency_key
    if idempotency_key and body_key and idempotency_key != body_key:
        raise ValidationError("Idempotency-Key header and request.idempotencyKey differ")
    key = idempotency_key or body_key
    if not key:
        raise ValidationError("Idempotency-Key header is required", code="MISSING_IDEMPOTENCY_KEY")

    guard = await build_idempotency_guard(request, uow, ctx, key, route="prepare", replay_status=200)
    if replay := await guard.replay():
        return replay

    payment_request = PaymentRequest(
        payer=Party(address=body.request.payer.address, chain_id=body.request.payer.chain_id),
        recipient=Party(address=body.request.recipient.address, chain_id=body.request.recipient.chain_id),
        asset=await _resolve_amount(body.request.asset, catalog),
        idempotency_key=key,
        memo=body.request.memo,
    )
    result = await orchestrator.prepare(ctx.merchant_id, payment_request)

    response = PrepareResponse(
        payment=PaymentOut.from_domain(result.payment),
        fee_quote=FeeQuoteOut.from_domain(result.fee_quote) if result.fee_quote else None,
    )
    return await guard.respond(201 if result.created else 200, dump(response))


@router.post("/payments/submit")
async def submit_payment(
    body: SubmitRequest,
    request: Request,
    ctx: Annotated[AuthContext, Depends(require_scopes(SCOPE_PAYMENTS_WRITE))],
    uow: Annotated[UnitOfWork, Depends(get_uow)],
    orchestrator: Annotated[PaymentOrchestrator, Depends(get_orchestrator)],
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> Response:
    guard = await build_idempotency_guard(request, uow, ctx, idempotency_key, route="submit")
    if replay := await guard.replay():
        return replay

    payment = await orchestrator.submit(ctx.merchant_id, body.payment_id, body.signed_payload)
    return await guard.respond(200, dump(PaymentResponse(payment=PaymentOut.from_domain(payment))))


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: str,
    ctx: Annotated[AuthContext, Depends(require_scopes(SCOPE_PAYMENTS_READ))],
    orchestrator: Annotated[PaymentOrchestrator, Depends(get_orchestrator)],
) -> JSONResponse:
    payment = await orchestrator.get_payment(ctx.merchant_id, payment_id)
    return JSONResponse(content=dump(PaymentResponse(payment=PaymentOut.from_domain(payment))))


@router.post("/payments/{payment_id}/refresh")
async def refresh_payment(
    payment_id: str,
    request: Request,
    ctx: Annotated[AuthContext, Depends(require_scopes(SCOPE_PAYMENTS_WRITE))],
    uow: Annotated[UnitOfWork, Depends(get_uow)],
    orchestrator: Annotated[PaymentOrchestrator, Depends(get_orchestrator)],
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> Response:
    guard = await build_idempotency_guard(request, uow, ctx, idempotency_key, route="refresh")
    if replay := await guard.replay():
        return replay

    payment = await orchestrator.refresh(ctx.merchant_id, payment_id)
    return await guard.respond(200, dump(PaymentResponse(payment=PaymentOut.from_domain(payment))))


@router.post("/webhooks/intents")
async def intents_webhook(
    request: Request,
    uow: Annotated[UnitOfWork, Depends(get_uow)],
    orchestrator: Annotated[PaymentOrchestrator, Depends(get_orchestrator)],
    settings: Annotated[Settings, Depends(get_settings)],
    x_webhook_signature: Annotated[str | None, Header()] = None,
    x_webhook_nonce: Annotated[str | None, Header()] = None,
) -> Response:
    """Provider callback. Always acknowledged with 200 so the provider stops retrying."""
    raw = await request.body()
    ack = WebhookAck()
    payment_id: str | None = None
    log = logger.bind(source=WEBHOOK_SOURCE)

    if not verify_webhook_signature(
        raw,
        x_webhook_signature,
        settings.webhook_secret,
        settings.webhook_signature_encoding,
        nonce=x_webhook_nonce,
    ):
        ack.reason = INVALID_SIGNATURE
    else:
        try:
            event = normalize_webhook(raw)
            outcome = await orchestrator.reconcile(event)
        except WebhookPayloadError as e:
            ack.reason = e.reason
        except Exception as e:
            log.error("webhook_handler_error", error=str(e), exc_info=True)
            ack.reason = HANDLER_ERROR
            await uow.rollback()
        else:
            payment_id = outcome.payment_id
            ack.found = outcome.found
            ack.used = outcome.used
            ack.upstream = outcome.upstream
            ack.local = outcome.local.value if outcome.local else None
            ack.mutated = outcome.mutated
            ack.tx_id = outcome.tx_id
            ack.reason = outcome.reason

    if ack.mutated:
        delivery_outcome = "APPLIED"
    elif ack.reason in REJECTION_REASONS:
        delivery_outcome = "REJECTED"
    else:
        delivery_outcome = "NOOP"

    WEBHOOK_EVENTS_TOTAL.labels(outcome=delivery_outcome, reason=ack.reason or "none").inc()
    log.info(
        "webhook_rejected" if delivery_outcome == "REJECTED" else "webhook_processed",
        outcome=delivery_outcome,
        reason=ack.reason,
        payment_id=payment_id,
        found=ack.found,
        mutated=ack.mutated,
    )

    await _record_delivery(uow, raw, x_webhook_signature, delivery_outcome, ack.reason, payment_id)

    if settings.is_production:
        return PlainTextResponse("ok")
    return JSONResponse(content=dump(ack))


async def _record_delivery(
    uow: UnitOfWork,
    raw: bytes,
    signature: str | None,
    outcome: str,
    reason: str | None,
    payment_id: str | None,
) -> None:
    delivery = WebhookDelivery.create(
        source=WEBHOOK_SOURCE,
        payload=raw.decode("utf-8", errors="replace"),
        signature=signature,
        outcome=outcome,
        reason=reason,
        payment_id=payment_id,
    )
    try:
        await uow.webhook_deliveries.add(delivery)
        await uow.commit()
    except SQLAlchemyError as e:
        logger.error("webhook_delivery_record_failed", error=str(e))
        await uow.rollback()
