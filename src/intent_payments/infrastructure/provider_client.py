from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Self

import httpx
import structlog

from intent_payments.domain.exceptions import (
    ProviderAuthError,
    ProviderEndpointNotFoundError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from intent_payments.domain.models import AssetAmount, FeeQuote, PaymentRequest
from intent_payments.infrastructure.metrics import track_provider_call


logger = structlog.get_logger()


DEFAULT_EXECUTE_PATHS = ("v0/execute", "v0/intents", "v0/create", "execute")
DEFAULT_TIMEOUT_SECONDS = 12.0

PROVIDER_REF_FIELDS = ("requestId", "statusId", "intentId", "executionId", "id", "depositAddress")
# /v0/status query parameter per reference field; ids without their own parameter go as "id"
STATUS_QUERY_PARAMS = {
    "requestId": "requestId",
    "statusId": "statusId",
    "intentId": "id",
    "executionId": "id",
    "id": "id",
    "depositAddress": "depositAddress",
}
DEFAULT_STATUS_QUERY_PARAM = "requestId"
TX_HASH_FIELDS = ("txHash", "txId", "transactionHash", "transactionId")


def _first_present(data: dict[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = data.get(name)
        if value is not None and not isinstance(value, (dict, list, bool)) and str(value) != "":
            return str(value)
    return None


def extract_provider_ref(data: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return the provider reference and the response field it was taken from."""
    for name in PROVIDER_REF_FIELDS:
        value = _first_present(data, (name,))
        if value is not None:
            return value, name
    return None, None


def status_query(provider_ref: str, ref_kind: str | None) -> dict[str, str]:
    param = STATUS_QUERY_PARAMS.get(ref_kind or "", DEFAULT_STATUS_QUERY_PARAM)
    return {param: provider_ref}


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class ExecutionResult:
    provider_ref: str | None
    status: str | None
    provider_ref_kind: str | None = None
    deposit_address: str | None = None
    tx_hash: str | None = None
    quote_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> Self:
        status = data.get("status")
        provider_ref, provider_ref_kind = extract_provider_ref(data)
        return cls(
            provider_ref=provider_ref,
            status=str(status) if status is not None else None,
            provider_ref_kind=provider_ref_kind,
            deposit_address=_first_present(data, ("depositAddress",)),
            tx_hash=_first_present(data, TX_HASH_FIELDS),
            quote_id=_first_present(data, ("quoteId",)),
            raw=data,
        )


@dataclass(frozen=True)
class ProviderStatus:
    upstream_status: str | None
    tx_hash: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> Self:
        status = data.get("status")
        return cls(
            upstream_status=str(status) if status is not None else None,
            tx_hash=_first_present(data, TX_HASH_FIELDS),
            raw=data,
        )


@dataclass(frozen=True)
class ProviderQuote:
    quote_id: str | None
    deposit_address: str | None
    amount_in: str | None
    amount_out: str | None
    expires_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> Self:
        quote = data.get("quote") if isinstance(data.get("quote"), dict) else data
        return cls(
            quote_id=_first_present(data, ("quoteId", "correlationId")) or _first_present(quote, ("quoteId",)),
            deposit_address=_first_present(quote, ("depositAddress",)),
            amount_in=_first_present(quote, ("amountIn",)),
            amount_out=_first_present(quote, ("amountOut",)),
            expires_at=_parse_datetime(quote.get("deadline") or quote.get("expiresAt")),
            raw=data,
        )

    def to_fee_quote(self, asset_id: str) -> FeeQuote:
        """Fee is the spread between what goes in and what comes out, in smallest units."""
        fee = "0"
        if self.amount_in and self.amount_out and self.amount_in.isdigit() and self.amount_out.isdigit():
            fee = str(max(int(self.amount_in) - int(self.amount_out), 0))
        return FeeQuote(
            total_fee=AssetAmount(asset_id=asset_id, amount=fee),
            quote_id=self.quote_id,
            expires_at=self.expires_at,
        )


class IntentsProviderClient:
    """HTTP client for the intent execution provider.

    Every call carries a timeout. Timeouts, transport errors, 429 and 5xx are raised
    as retryable ``ProviderError``; 401/403 and other 4xx are fatal.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        execute_paths: list[str] | tuple[str, ...] = DEFAULT_EXECUTE_PATHS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._execute_paths = tuple(execute_paths)
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url)

    @property
    def execute_paths(self) -> tuple[str, ...]:
        return self._execute_paths

    def _client(self) -> httpx.AsyncClient:
        if not self.is_configured:
            raise ProviderNotConfiguredError("Intent execution provider is not configured")
        if self._http_client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._client()
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            return await client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("provider_timeout", method=method, path=path, timeout=self._timeout)
            raise ProviderTimeoutError(f"Provider call to {path} timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            logger.warning("provider_unreachable", method=method, path=path, error=str(e))
            raise ProviderUnavailableError(f"Provider unreachable: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._json(response).get("message") or response.text or response.reason_phrase
        if status in (401, 403):
            raise ProviderAuthError(f"Provider rejected credentials: {message}", upstream_status=status)
        if status == 429:
            raise ProviderUnavailableError(
                f"Provider rate limit exceeded: {message}",
                code="PROVIDER_RATE_LIMITED",
                upstream_status=status,
            )
        if status >= 500:
            raise ProviderError(f"Provider error on /{path} ({status}): {message}", upstream_status=status)
        raise ProviderRejectedError(f"Provider rejected request: {message}", upstream_status=status)

    @track_provider_call("quote")
    async def quote(self, request: PaymentRequest) -> ProviderQuote:
        payload = {
            "originAsset": request.asset.asset_id,
            "destinationAsset": request.asset.asset_id,
            "amount": request.asset.amount,
            "recipient": request.recipient.address,
            "refundTo": request.payer.address,
            "dry": False,
        }
        response = await self._request("POST", "v0/quote", json=payload)
        self._raise_for_status(response, "v0/quote")
        result = ProviderQuote.from_response(self._json(response))
        logger.info("provider_quote_received", quote_id=result.quote_id)
        return result

    @track_provider_call("execute")
    async def execute(self, payload: dict[str, Any] | str) -> ExecutionResult:
        """Submit an execution, walking the candidate endpoints until one exists.

        A 404 moves on to the next path; any other failure is raised immediately.
        """
        kwargs: dict[str, Any] = {"content": payload} if isinstance(payload, str) else {"json": payload}
        tried: list[str] = []
        for path in self._execute_paths:
            tried.append(path)
            response = await self._request("POST", path, **kwargs)
            if response.status_code == 404:
                logger.debug("provider_execute_path_not_found", path=path)
                continue
            self._raise_for_status(response, path)
            result = ExecutionResult.from_response(self._json(response))
            logger.info(
                "provider_execute_accepted",
                path=path,
                provider_ref=result.provider_ref,
                status=result.status,
            )
            return result
        raise ProviderEndpointNotFoundError(tried)

    @track_provider_call("fetch_status")
    async def fetch_status(self, provider_ref: str, ref_kind: str | None = None) -> ProviderStatus:
        """Poll /v0/status, naming the query parameter after the kind of reference.

        ``ref_kind`` is the execute response field the reference came from; unknown
        kinds are sent as ``requestId``.
        """
        response = await self._request("GET", "v0/status", params=status_query(provider_ref, ref_kind))
        self._raise_for_status(response, "v0/status")
        return ProviderStatus.from_response(self._json(response))

    @track_provider_call("tokens")
    async def tokens(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "v0/tokens")
        self._raise_for_status(response, "v0/tokens")
        data = response.json()
        if not isinstance(data, list):
            raise ProviderError("Token catalog response is not a list", code="TOKENS_UNAVAILABLE")
        return data
