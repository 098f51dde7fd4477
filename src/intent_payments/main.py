import asyncio
import signal
from typing import NoReturn

import structlog

from intent_payments.api.app import create_app
from intent_payments.api.metrics_server import MetricsServer
from intent_payments.config import settings
from intent_payments.http_server import UvicornServer
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.provider_client import IntentsProviderClient
from intent_payments.infrastructure.rate_limiter import FixedWindowRateLimiter, parse_windows
from intent_payments.infrastructure.redis_client import RedisClient
from intent_payments.infrastructure.token_catalog import TokenCatalog
from intent_payments.logging import configure_logging


logger = structlog.get_logger()


def build_provider() -> IntentsProviderClient:
    return IntentsProviderClient(
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key or None,
        timeout=settings.provider_timeout_seconds,
        execute_paths=settings.execute_paths,
    )


async def main() -> NoReturn:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_intent_payments",
        http_port=settings.http_port,
        metrics_port=settings.metrics_port,
        environment=settings.environment,
        log_level=settings.log_level,
        rate_limit_enabled=settings.rate_limit_enabled,
        metrics_enabled=settings.metrics_enabled,
        provider_configured=bool(settings.provider_base_url),
    )

    database = Database(settings.database_url)

    redis_client: RedisClient | None = None
    rate_limiter: FixedWindowRateLimiter | None = None
    if settings.rate_limit_enabled:
        redis_client = RedisClient(settings.redis_url)
        await redis_client.connect()
        rate_limiter = FixedWindowRateLimiter(
            redis_client=redis_client.client,
            windows=parse_windows(settings.rate_limit_windows),
        )
        logger.info(
            "rate_limiting_enabled",
            windows=[(w.seconds, w.limit) for w in rate_limiter.windows],
        )

    provider = build_provider()
    token_catalog = TokenCatalog(
        provider,
        public_feed_url=settings.tokens_feed_base.rstrip("/") + settings.tokens_feed_path,
        ttl_seconds=settings.token_cache_ttl_seconds,
        timeout=settings.provider_timeout_seconds,
    )

    metrics_server: MetricsServer | None = None
    if settings.metrics_enabled:
        metrics_server = MetricsServer(
            host=settings.metrics_host,
            port=settings.metrics_port,
        )
        await metrics_server.start()

    app = create_app(
        settings=settings,
        database=database,
        redis_client=redis_client,
        rate_limiter=rate_limiter,
        provider=provider,
        token_catalog=token_catalog,
    )
    server = UvicornServer(app, host=settings.http_host, port=settings.http_port)

    loop = asyncio.get_running_loop()

    async def shutdown() -> None:
        logger.info("shutting_down")
        await server.stop(grace=10.0)
        if metrics_server:
            await metrics_server.stop()
        await provider.close()
        if redis_client:
            await redis_client.close()
        await database.close()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(shutdown()),
        )

    await server.start()
    await server.wait_for_termination()

    raise SystemExit(0)


if __name__ == "__main__":
    asyncio.run(main())
