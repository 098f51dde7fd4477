"""Unit tests for the public HTTP API with mocked persistence and provider."""

import json
from collections.abc import Iterator
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from intent_payments.api.app import create_app
from intent_payments.api.dependencies import get_uow
from intent_payments.config import Settings
from intent_payments.domain.exceptions import ProviderUnavailableError
from intent_payments.domain.models import ApiKey, IdempotencyRecord, Payment, PaymentStatus
from intent_payments.domain.signatures import compute_hmac, sign_request
from intent_payments.infrastructure.provider_client import ExecutionResult, ProviderQuote
from intent_payments.infrastructure.rate_limiter import RateLimitDecision, RateLimitWindow


WEBHOOK_SECRET = "whsec_provider"

PREPARE_BODY = {
    "request": {
        "payer": {"address": "alice.near", "chainId": "near"},
        "recipient": {"address": "0xMerchantWallet", "chainId": "eth"},
        "asset": {"assetId": "nep141:usdc.near", "amount": "5000000"},
        "memo": "order #1001",
    }
}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        webhook_secret=WEBHOOK_SECRET,
        webhook_signature_encoding="base64",
        rate_limit_enabled=False,
        metrics_enabled=False,
    )


@pytest.fixture
def mock_provider() -> MagicMock:
    """Create configured provider mock."""
    provider = MagicMock()
    provider.is_configured = True
    provider.quote = AsyncMock(
        return_value=ProviderQuote(quote_id="q-1", deposit_address="0xdep", amount_in="5000000", amount_out="4990000")
    )
    provider.execute = AsyncMock(return_value=ExecutionResult(provider_ref="0xdep", status="PENDING"))
    return provider


@pytest.fixture
def mock_database() -> MagicMock:
    database = MagicMock()
    database.health_check = AsyncMock(return_value=True)
    return database


@pytest.fixture
def app(
    settings: Settings,
    mock_database: MagicMock,
    mock_provider: MagicMock,
    mock_uow: AsyncMock,
    publishable_api_key: ApiKey,
) -> FastAPI:
    """Create API app whose requests share the mocked UoW."""
    application = create_app(settings=settings, database=mock_database, provider=mock_provider)
    application.dependency_overrides[get_uow] = lambda: mock_uow
    mock_uow.api_keys.find_active_by_key.return_value = publishable_api_key
    return application


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(idempotency_key: str | None = "order-1001") -> dict[str, str]:
    headers = {"X-Api-Key": "pk_test_abc"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


class TestPrepareEndpoint:
    """Tests for POST /v1/payments/prepare."""

    def test_prepare_creates_payment(self, client: TestClient, mock_uow: AsyncMock) -> None:
        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers=auth_headers())

        assert response.status_code == 201
        body = response.json()
        assert body["payment"]["status"] == "PENDING"
        assert body["payment"]["paymentId"].startswith("pay_")
        assert body["payment"]["request"]["idempotencyKey"] == "order-1001"
        assert body["payment"]["request"]["asset"]["amount"] == "5000000"
        assert response.headers["Idempotency-Key"] == "order-1001"
        assert "X-Request-Id" in response.headers

        key, status_code, stored_body = mock_uow.idempotency.commit.call_args.args
        assert key == "merchant-001:order-1001"
        assert status_code == 201
        assert stored_body == body

    def test_prepare_key_from_body(self, client: TestClient) -> None:
        body = json.loads(json.dumps(PREPARE_BODY))
        body["request"]["idempotencyKey"] = "order-body"

        response = client.post("/v1/payments/prepare", json=body, headers=auth_headers(None))

        assert response.status_code == 201
        assert response.json()["payment"]["request"]["idempotencyKey"] == "order-body"

    def test_prepare_conflicting_keys_rejected(self, client: TestClient) -> None:
        body = json.loads(json.dumps(PREPARE_BODY))
        body["request"]["idempotencyKey"] = "order-body"

        response = client.post("/v1/payments/prepare", json=body, headers=auth_headers("order-header"))

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PARAMS"

    def test_prepare_requires_idempotency_key(self, client: TestClient) -> None:
        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers=auth_headers(None))

        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_IDEMPOTENCY_KEY"

    def test_prepare_replay_served_from_store(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        mock_provider: MagicMock,
    ) -> None:
        cached = {"payment": {"paymentId": "pay_cached"}, "feeQuote": None}
        mock_uow.idempotency.begin.return_value = IdempotencyRecord(
            key="merchant-001:order-1001",
            status_code=201,
            response_body=cached,
        )

        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers=auth_headers())

        assert response.status_code == 200
        assert response.json() == cached
        assert response.headers["Idempotency-Replayed"] == "true"
        mock_provider.execute.assert_not_called()
        mock_uow.payments.reserve.assert_not_called()

    def test_prepare_key_reused_with_different_body(self, client: TestClient, mock_uow: AsyncMock) -> None:
        mock_uow.idempotency.begin.return_value = IdempotencyRecord(
            key="merchant-001:order-1001",
            status_code=201,
            response_body={},
            request_fingerprint="0" * 64,
        )

        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["code"] == "IDEMPOTENCY_KEY_REUSED"

    def test_prepare_rejects_both_amount_forms(self, client: TestClient) -> None:
        body = json.loads(json.dumps(PREPARE_BODY))
        body["request"]["asset"]["decimalAmount"] = "5"

        response = client.post("/v1/payments/prepare", json=body, headers=auth_headers())

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PARAMS"

    def test_prepare_rejects_non_integer_amount(self, client: TestClient) -> None:
        body = json.loads(json.dumps(PREPARE_BODY))
        body["request"]["asset"]["amount"] = "5.5"

        response = client.post("/v1/payments/prepare", json=body, headers=auth_headers())

        assert response.status_code == 400

    def test_prepare_decimal_amount_uses_token_catalog(
        self,
        settings: Settings,
        mock_database: MagicMock,
        mock_provider: MagicMock,
        mock_uow: AsyncMock,
        publishable_api_key: ApiKey,
    ) -> None:
        catalog = MagicMock()
        catalog.to_smallest_units = AsyncMock(return_value="49990000")
        application = create_app(
            settings=settings,
            database=mock_database,
            provider=mock_provider,
            token_catalog=catalog,
        )
        application.dependency_overrides[get_uow] = lambda: mock_uow
        mock_uow.api_keys.find_active_by_key.return_value = publishable_api_key
        body = json.loads(json.dumps(PREPARE_BODY))
        body["request"]["asset"] = {"assetId": "nep141:usdc.near", "decimalAmount": "49.99"}

        with TestClient(application) as test_client:
            response = test_client.post("/v1/payments/prepare", json=body, headers=auth_headers())

        assert response.status_code == 201
        assert response.json()["payment"]["request"]["asset"]["amount"] == "49990000"
        catalog.to_smallest_units.assert_awaited_once_with("nep141:usdc.near", "49.99")


class TestAuthentication:
    def test_missing_api_key(self, client: TestClient) -> None:
        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers={"Idempotency-Key": "k"})

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHENTICATED"

    def test_unknown_api_key(self, client: TestClient, mock_uow: AsyncMock) -> None:
        mock_uow.api_keys.find_active_by_key.return_value = None

        response = client.get("/v1/payments/pay_1", headers=auth_headers(None))

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_API_KEY"

    def test_secret_key_requires_signature(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        secret_api_key: ApiKey,
    ) -> None:
        mock_uow.api_keys.find_active_by_key.return_value = secret_api_key

        response = client.post("/v1/payments/prepare", json=PREPARE_BODY, headers=auth_headers())

        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_SIGNATURE"

    def test_secret_key_with_valid_signature(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        secret_api_key: ApiKey,
    ) -> None:
        mock_uow.api_keys.find_active_by_key.return_value = secret_api_key
        raw = json.dumps(PREPARE_BODY).encode()
        path = "/v1/payments/prepare"
        headers = {
            **auth_headers(),
            "Content-Type": "application/json",
            "X-Nonce": "nonce-1",
            "X-Signature": sign_request("whsec_test_secret", "nonce-1", "POST", path, raw),
        }

        response = client.post(path, content=raw, headers=headers)

        assert response.status_code == 201

    def test_rate_limited(
        self,
        app: FastAPI,
        client: TestClient,
    ) -> None:
        limiter = MagicMock()
        limiter.check = AsyncMock(
            return_value=RateLimitDecision(
                allowed=False,
                retry_after=30,
                window=RateLimitWindow(seconds=60, limit=300),
                count=301,
            )
        )
        app.state.rate_limiter = limiter

        response = client.get("/v1/payments/pay_1", headers=auth_headers(None))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["code"] == "RATE_LIMITED"
        limiter.check.assert_awaited_once_with("pk:key_pk_001")


class TestPaymentEndpoints:
    def test_get_payment(self, client: TestClient, mock_uow: AsyncMock, sample_payment: Payment) -> None:
        mock_uow.payments.get_for_merchant.return_value = sample_payment

        response = client.get(f"/v1/payments/{sample_payment.id}", headers=auth_headers(None))

        assert response.status_code == 200
        assert response.json()["payment"]["paymentId"] == sample_payment.id
        mock_uow.payments.get_for_merchant.assert_awaited_once_with("merchant-001", sample_payment.id)

    def test_get_payment_not_found(self, client: TestClient) -> None:
        response = client.get("/v1/payments/pay_missing", headers=auth_headers(None))

        assert response.status_code == 404
        assert response.json()["code"] == "PAYMENT_NOT_FOUND"

    def test_submit_payment(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        mock_provider: MagicMock,
        sample_payment: Payment,
    ) -> None:
        mock_uow.payments.get_for_merchant.return_value = sample_payment
        mock_uow.payments.record_execution.return_value = replace(sample_payment, provider_ref="0xdep")

        response = client.post(
            "/v1/payments/submit",
            json={"paymentId": sample_payment.id, "signedPayload": {"signature": "0xsig"}},
            headers=auth_headers("submit-1"),
        )

        assert response.status_code == 200
        assert response.json()["payment"]["providerRef"] == "0xdep"
        mock_provider.execute.assert_awaited_once_with({"signature": "0xsig"})

    def test_submit_terminal_payment_conflicts(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        sample_payment: Payment,
    ) -> None:
        paid = replace(sample_payment, status=PaymentStatus.SUCCESS)
        mock_uow.payments.get_for_merchant.return_value = paid

        response = client.post(
            "/v1/payments/submit",
            json={"paymentId": paid.id, "signedPayload": "blob"},
            headers=auth_headers("submit-2"),
        )

        assert response.status_code == 409
        assert response.json()["code"] == "PAYMENT_ALREADY_FINALIZED"
        mock_uow.idempotency.commit.assert_not_called()

    def test_submit_provider_failure_is_retryable(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        mock_provider: MagicMock,
        sample_payment: Payment,
    ) -> None:
        mock_uow.payments.get_for_merchant.return_value = sample_payment
        mock_provider.execute.side_effect = ProviderUnavailableError("down")

        response = client.post(
            "/v1/payments/submit",
            json={"paymentId": sample_payment.id, "signedPayload": "blob"},
            headers=auth_headers("submit-3"),
        )

        assert response.status_code == 503
        assert response.json() == {"code": "PROVIDER_UNAVAILABLE", "message": "down", "retryable": True}


class TestWebhookEndpoint:
    """Tests for POST /v1/webhooks/intents."""

    def _post(self, client: TestClient, document: dict[str, object], secret: str = WEBHOOK_SECRET):
        raw = json.dumps(document).encode()
        return client.post(
            "/v1/webhooks/intents",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": compute_hmac(secret, raw, "base64")},
        )

    def test_applies_terminal_status(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        sample_payment: Payment,
    ) -> None:
        mock_uow.payments.get_by_reference.return_value = sample_payment
        mock_uow.payments.transition.return_value = replace(sample_payment, status=PaymentStatus.SUCCESS)

        response = self._post(client, {"orderId": sample_payment.id, "status": "SUCCESS", "txId": "0xabc"})

        assert response.status_code == 200
        ack = response.json()
        assert ack["ok"] is True
        assert ack["found"] is True
        assert ack["used"] == "orderId"
        assert ack["mutated"] is True
        assert ack["local"] == "SUCCESS"
        assert ack["txId"] == "0xabc"
        delivery = mock_uow.webhook_deliveries.add.call_args.args[0]
        assert delivery.outcome == "APPLIED"
        assert delivery.payment_id == sample_payment.id

    def test_quote_id_only_payload_settles_payment(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
        sample_payment: Payment,
    ) -> None:
        mock_uow.payments.get_by_quote_id.return_value = sample_payment
        mock_uow.payments.transition.return_value = replace(sample_payment, status=PaymentStatus.SUCCESS)

        response = self._post(client, {"data": {"quote_id": "q1", "status": "filled"}})

        ack = response.json()
        assert ack["used"] == "quoteId"
        assert ack["mutated"] is True
        assert ack["local"] == "SUCCESS"
        mock_uow.payments.get_by_quote_id.assert_awaited_once_with("q1")
        assert mock_uow.payments.transition.call_args.args[1] == PaymentStatus.SUCCESS

    def test_invalid_signature_acknowledged(self, client: TestClient, mock_uow: AsyncMock) -> None:
        response = self._post(client, {"orderId": "pay_1", "status": "SUCCESS"}, secret="wrong")

        assert response.status_code == 200
        assert response.json()["reason"] == "INVALID_SIGNATURE"
        mock_uow.payments.get_by_reference.assert_not_called()
        assert mock_uow.webhook_deliveries.add.call_args.args[0].outcome == "REJECTED"

    def test_nonce_header_is_covered_by_signature(self, client: TestClient, mock_uow: AsyncMock) -> None:
        raw = json.dumps({"orderId": "pay_missing", "status": "SUCCESS"}).encode()
        signature = compute_hmac(WEBHOOK_SECRET, b"n-42" + raw, "base64")

        signed = client.post(
            "/v1/webhooks/intents",
            content=raw,
            headers={"X-Webhook-Signature": signature, "X-Webhook-Nonce": "n-42"},
        )
        replayed = client.post(
            "/v1/webhooks/intents",
            content=raw,
            headers={"X-Webhook-Signature": signature, "X-Webhook-Nonce": "n-43"},
        )

        assert signed.json()["reason"] == "ORDER_NOT_FOUND"
        assert replayed.json()["reason"] == "INVALID_SIGNATURE"

    def test_missing_identifier(self, client: TestClient) -> None:
        response = self._post(client, {"status": "SUCCESS"})

        assert response.status_code == 200
        assert response.json()["reason"] == "NO_ID"

    def test_unknown_order(self, client: TestClient, mock_uow: AsyncMock) -> None:
        response = self._post(client, {"orderId": "pay_missing", "status": "SUCCESS"})

        assert response.status_code == 200
        assert response.json()["found"] is False
        assert response.json()["reason"] == "ORDER_NOT_FOUND"
        assert mock_uow.webhook_deliveries.add.call_args.args[0].outcome == "NOOP"

    def test_handler_error_still_acknowledged(
        self,
        client: TestClient,
        mock_uow: AsyncMock,
    ) -> None:
        mock_uow.payments.get_by_reference.side_effect = RuntimeError("db down")

        response = self._post(client, {"orderId": "pay_1", "status": "SUCCESS"})

        assert response.status_code == 200
        assert response.json()["reason"] == "HANDLER_ERROR"

    def test_production_returns_plain_ok(
        self,
        settings: Settings,
        mock_database: MagicMock,
        mock_uow: AsyncMock,
    ) -> None:
        production = settings.model_copy(update={"environment": "production"})
        application = create_app(settings=production, database=mock_database)
        application.dependency_overrides[get_uow] = lambda: mock_uow

        with TestClient(application) as test_client:
            response = self._post(test_client, {"orderId": "pay_1", "status": "SUCCESS"}, secret="wrong")

        assert response.status_code == 200
        assert response.text == "ok"


class TestHealthEndpoint:
    def test_healthy(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {"database": True}}

    def test_degraded(self, client: TestClient, mock_database: MagicMock) -> None:
        mock_database.health_check.return_value = False

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
