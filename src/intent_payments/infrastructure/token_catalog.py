import asyncio
import time
from typing import Any

import httpx
import structlog

from intent_payments.domain.amounts import MAX_DECIMALS, to_smallest_units
from intent_payments.domain.exceptions import ProviderError, ValidationError
from intent_payments.infrastructure.provider_client import IntentsProviderClient


logger = structlog.get_logger()


DEFAULT_PUBLIC_FEED_BASE = "https://1click.chaindefuser.com"
DEFAULT_PUBLIC_FEED_PATH = "/v0/tokens"
DEFAULT_CACHE_TTL_SECONDS = 300.0


class TokenCatalog:
    """Asset decimal places, read from the provider's token list.

    The authenticated provider endpoint is tried first and the public feed second.
    Results are cached per process for ``ttl_seconds``; a refresh that fails while an
    older list is cached keeps serving the older list.
    """

    def __init__(
        self,
        provider: IntentsProviderClient | None,
        public_feed_url: str = DEFAULT_PUBLIC_FEED_BASE + DEFAULT_PUBLIC_FEED_PATH,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        timeout: float = 12.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._provider = provider
        self._public_feed_url = public_feed_url
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout
        self._http_client = http_client
        self._decimals: dict[str, int] = {}
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and time.monotonic() - self._loaded_at < self._ttl_seconds

    async def decimals(self, asset_id: str) -> int:
        await self._ensure_loaded()
        decimals = self._decimals.get(asset_id)
        if decimals is None:
            raise ValidationError(f"Unknown asset {asset_id}", code="UNKNOWN_ASSET")
        return decimals

    async def to_smallest_units(self, asset_id: str, amount: str) -> str:
        return to_smallest_units(amount, await self.decimals(asset_id))

    def invalidate(self) -> None:
        self._loaded_at = None

    async def _ensure_loaded(self) -> None:
        if self._is_fresh():
            return
        async with self._lock:
            if self._is_fresh():
                return
            tokens = await self._fetch()
            if tokens is None:
                if self._decimals:
                    logger.warning("token_catalog_stale", cached_assets=len(self._decimals))
                    return
                raise ProviderError("Token catalog unavailable", code="TOKENS_UNAVAILABLE")
            self._decimals = self._index(tokens)
            self._loaded_at = time.monotonic()
            logger.info("token_catalog_refreshed", assets=len(self._decimals))

    async def _fetch(self) -> list[dict[str, Any]] | None:
        if self._provider is not None and self._provider.is_configured:
            try:
                return await self._provider.tokens()
            except (ProviderError, ValueError) as e:
                logger.warning("token_catalog_provider_failed", error=str(e))

        try:
            return await self._fetch_public()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("token_catalog_public_feed_failed", url=self._public_feed_url, error=str(e))
            return None

    async def _fetch_public(self) -> list[dict[str, Any]]:
        if self._http_client is not None:
            response = await self._http_client.get(self._public_feed_url, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._public_feed_url)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError("Public token feed did not return a list")
        return data

    @staticmethod
    def _index(tokens: list[dict[str, Any]]) -> dict[str, int]:
        decimals: dict[str, int] = {}
        for token in tokens:
            if not isinstance(token, dict):
                continue
            asset_id = token.get("assetId")
            value = token.get("decimals")
            if not isinstance(asset_id, str) or isinstance(value, bool) or not isinstance(value, int):
                continue
            if 0 <= value <= MAX_DECIMALS:
                decimals[asset_id] = value
        return decimals
