import contextlib
from contextlib import AbstractAsyncContextManager
from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.repositories import (
    ApiKeyRepository,
    IdempotencyRepository,
    PaymentRepository,
    WebhookDeliveryRepository,
)


class UnitOfWork:
    def __init__(self, session: AsyncSession, database: Database | None = None) -> None:
        self._session = session
        self._database = database
        self.payments = PaymentRepository(session)
        self.idempotency = IdempotencyRepository(session)
        self.api_keys = ApiKeyRepository(session)
        self.webhook_deliveries = WebhookDeliveryRepository(session)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Serialize work on ``key`` across processes; a no-op without a database."""
        if self._database is None:
            return contextlib.nullcontext()
        return self._database.advisory_lock(key)

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
