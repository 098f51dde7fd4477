import hashlib
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated, Any

import structlog
from fastapi import Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from intent_payments.application.auth import AuthContext, Authenticator
from intent_payments.application.services import PaymentOrchestrator
from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.config import Settings
from intent_payments.domain.exceptions import (
    AuthError,
    IdempotencyKeyReusedError,
    RateLimitError,
    ValidationError,
)
from intent_payments.domain.models import ApiKeyType
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.metrics import IDEMPOTENT_REPLAYS_TOTAL, RATE_LIMIT_EXCEEDED_TOTAL
from intent_payments.infrastructure.provider_client import IntentsProviderClient
from intent_payments.infrastructure.rate_limiter import FixedWindowRateLimiter
from intent_payments.infrastructure.token_catalog import TokenCatalog


logger = structlog.get_logger()


IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
IDEMPOTENCY_REPLAYED_HEADER = "Idempotency-Replayed"


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_database(request: Request) -> Database:
    database: Database = request.app.state.database
    return database


def get_provider(request: Request) -> IntentsProviderClient | None:
    provider: IntentsProviderClient | None = request.app.state.provider
    return provider


def get_token_catalog(request: Request) -> TokenCatalog | None:
    catalog: TokenCatalog | None = request.app.state.token_catalog
    return catalog


async def get_uow(database: Annotated[Database, Depends(get_database)]) -> AsyncIterator[UnitOfWork]:
    async with database.session() as session:
        yield UnitOfWork(session, database)


def get_orchestrator(
    uow: Annotated[UnitOfWork, Depends(get_uow)],
    provider: Annotated[IntentsProviderClient | None, Depends(get_provider)],
) -> PaymentOrchestrator:
    return PaymentOrchestrator(uow, provider)


def client_ip(request: Request) -> str:
    if forwarded := request.headers.get("x-forwarded-for"):
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request, identifier: str, identifier_type: str) -> None:
    rate_limiter: FixedWindowRateLimiter | None = request.app.state.rate_limiter
    if rate_limiter is None:
        return
    decision = await rate_limiter.check(identifier)
    if not decision.allowed:
        RATE_LIMIT_EXCEEDED_TOTAL.labels(identifier_type=identifier_type).inc()
        logger.warning(
            "rate_limit_exceeded",
            identifier=identifier,
            window_seconds=decision.window.seconds if decision.window else None,
            count=decision.count,
        )
        raise RateLimitError(decision.retry_after)


def require_scopes(*scopes: str) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency: authenticate, rate limit, then verify the request signature."""

    async def dependency(
        request: Request,
        uow: Annotated[UnitOfWork, Depends(get_uow)],
        x_api_key: Annotated[str | None, Header()] = None,
        x_signature: Annotated[str | None, Header()] = None,
        x_nonce: Annotated[str | None, Header()] = None,
    ) -> AuthContext:
        authenticator = Authenticator(uow)
        try:
            ctx = await authenticator.authenticate(x_api_key, list(scopes))
        except AuthError:
            await enforce_rate_limit(request, f"ip:{client_ip(request)}", "ip")
            raise
        structlog.contextvars.bind_contextvars(merchant_id=ctx.merchant_id, api_key_id=ctx.api_key_id)

        if ctx.key_type is ApiKeyType.PUBLISHABLE:
            await enforce_rate_limit(request, f"pk:{ctx.api_key_id}", "publishable_key")
        else:
            await enforce_rate_limit(request, f"key:{ctx.api_key_id}", "api_key")

        body = await request.body()
        authenticator.verify_request(ctx, x_signature, x_nonce, request.method, request.url.path, body)
        return ctx

    return dependency


def request_fingerprint(method: str, path: str, body: bytes) -> str:
    digest = hashlib.sha256()
    digest.update(method.upper().encode("ascii"))
    digest.update(path.encode("utf-8"))
    digest.update(body)
    return digest.hexdigest()


class IdempotencyGuard:
    """Short-circuits replays of a mutating request and caches its first 2xx response.

    Records are scoped per merchant. A store failure on read is a MISS and on write is
    logged; payment state stays correct either way because prepare reserves via the
    payments natural key and finalization is compare-and-set.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        merchant_id: str,
        key: str,
        fingerprint: str,
        route: str,
        ttl_seconds: int,
        replay_status: int | None = None,
    ) -> None:
        self._uow = uow
        self._client_key = key
        self._key = f"{merchant_id}:{key}"
        self._fingerprint = fingerprint
        self._route = route
        self._ttl_seconds = ttl_seconds
        self._replay_status = replay_status

    @property
    def key(self) -> str:
        return self._key

    async def replay(self) -> JSONResponse | None:
        try:
            record = await self._uow.idempotency.begin(self._key)
        except SQLAlchemyError as e:
            logger.warning("idempotency_read_failed", key=self._key, error=str(e))
            await self._uow.rollback()
            return None

        if record is None:
            return None
        if record.request_fingerprint and record.request_fingerprint != self._fingerprint:
            raise IdempotencyKeyReusedError(self._client_key)

        IDEMPOTENT_REPLAYS_TOTAL.labels(route=self._route).inc()
        logger.info("idempotent_replay", key=self._key, route=self._route)
        return JSONResponse(
            status_code=self._replay_status or record.status_code,
            content=record.response_body,
            headers={
                IDEMPOTENCY_REPLAYED_HEADER: "true",
                IDEMPOTENCY_KEY_HEADER: self._client_key,
            },
        )

    async def respond(self, status_code: int, body: dict[str, Any]) -> JSONResponse:
        if 200 <= status_code < 300:
            try:
                stored = await self._uow.idempotency.commit(
                    self._key,
                    status_code,
                    body,
                    fingerprint=self._fingerprint,
                    ttl_seconds=self._ttl_seconds,
                )
                await self._uow.commit()
                if not stored:
                    logger.info("idempotency_record_exists", key=self._key)
            except SQLAlchemyError as e:
                logger.error("idempotency_write_failed", key=self._key, error=str(e))
                await self._uow.rollback()

        return JSONResponse(
            status_code=status_code,
            content=body,
            headers={IDEMPOTENCY_KEY_HEADER: self._client_key},
        )


async def build_idempotency_guard(
    request: Request,
    uow: UnitOfWork,
    ctx: AuthContext,
    key: str | None,
    route: str,
    replay_status: int | None = None,
) -> IdempotencyGuard:
    if not key:
        raise ValidationError("Idempotency-Key header is required", code="MISSING_IDEMPOTENCY_KEY")
    body = await request.body()
    settings = get_settings(request)
    return IdempotencyGuard(
        uow,
        merchant_id=ctx.merchant_id,
        key=key,
        fingerprint=request_fingerprint(request.method, request.url.path, body),
        route=route,
        ttl_seconds=settings.idempotency_ttl_seconds,
        replay_status=replay_status,
    )
