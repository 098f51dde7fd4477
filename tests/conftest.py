"""Shared pytest fixtures for intent payments tests."""

import contextlib
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.domain.models import (
    ApiKey,
    ApiKeyType,
    AssetAmount,
    Party,
    Payment,
    PaymentRequest,
    PaymentStatus,
)


@pytest.fixture
def mock_payment_repository() -> AsyncMock:
    """Create mock PaymentRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.get_for_merchant = AsyncMock(return_value=None)
    repo.get_by_natural_key = AsyncMock(return_value=None)
    repo.get_by_reference = AsyncMock(return_value=None)
    repo.get_by_quote_id = AsyncMock(return_value=None)
    repo.reserve = AsyncMock(return_value=True)
    repo.record_execution = AsyncMock(return_value=None)
    repo.transition = AsyncMock(return_value=None)
    repo.claim_pending = AsyncMock(return_value=[])
    repo.schedule_next_attempt = AsyncMock(return_value=None)
    repo.expire_pending_before = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_idempotency_repository() -> AsyncMock:
    """Create mock IdempotencyRepository."""
    repo = AsyncMock()
    repo.begin = AsyncMock(return_value=None)
    repo.commit = AsyncMock(return_value=True)
    repo.delete_expired = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def mock_api_key_repository() -> AsyncMock:
    """Create mock ApiKeyRepository."""
    repo = AsyncMock()
    repo.find_active_by_key = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_webhook_delivery_repository() -> AsyncMock:
    """Create mock WebhookDeliveryRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_uow(
    mock_payment_repository: AsyncMock,
    mock_idempotency_repository: AsyncMock,
    mock_api_key_repository: AsyncMock,
    mock_webhook_delivery_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.payments = mock_payment_repository
    uow.idempotency = mock_idempotency_repository
    uow.api_keys = mock_api_key_repository
    uow.webhook_deliveries = mock_webhook_delivery_repository
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)
    uow.lock = MagicMock(side_effect=lambda key: contextlib.nullcontext())

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


@pytest.fixture
def sample_request() -> PaymentRequest:
    """Create sample payment request for 5 USDC."""
    return create_payment_request()


@pytest.fixture
def sample_payment(sample_request: PaymentRequest) -> Payment:
    """Create sample pending payment."""
    return create_payment(request=sample_request)


@pytest.fixture
def secret_api_key() -> ApiKey:
    """Create active secret API key with read and write scopes."""
    return ApiKey(
        id="key_secret_001",
        merchant_id="merchant-001",
        type=ApiKeyType.SECRET,
        scopes=["payments:read", "payments:write"],
        secret="whsec_test_secret",
    )


@pytest.fixture
def publishable_api_key() -> ApiKey:
    """Create active publishable API key with read and write scopes."""
    return ApiKey(
        id="key_pk_001",
        merchant_id="merchant-001",
        type=ApiKeyType.PUBLISHABLE,
        scopes=["payments:read", "payments:write"],
    )


def create_payment_request(
    idempotency_key: str = "order-1001",
    asset_id: str = "nep141:usdc.near",
    amount: str = "5000000",
    memo: str | None = None,
) -> PaymentRequest:
    """Helper to create PaymentRequest with custom values."""
    return PaymentRequest(
        payer=Party(address="alice.near", chain_id="near"),
        recipient=Party(address="0xMerchantWallet", chain_id="eth"),
        asset=AssetAmount(asset_id=asset_id, amount=amount),
        idempotency_key=idempotency_key,
        memo=memo,
    )


def create_payment(
    payment_id: str = "pay_01HZX0000000000000000000",
    merchant_id: str = "merchant-001",
    status: PaymentStatus = PaymentStatus.PENDING,
    request: PaymentRequest | None = None,
    provider_ref: str | None = None,
    quote_id: str | None = None,
    execution_attempts: int = 0,
    provider_ref_kind: str | None = None,
) -> Payment:
    """Helper to create Payment with custom values."""
    return Payment(
        id=payment_id,
        merchant_id=merchant_id,
        status=status,
        request=request or create_payment_request(),
        provider_ref=provider_ref,
        provider_ref_kind=provider_ref_kind,
        quote_id=quote_id,
        execution_attempts=execution_attempts,
        created_at=datetime.now(UTC),
        updated_at=datetime.now(UTC),
    )
