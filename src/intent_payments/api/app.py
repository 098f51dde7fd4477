from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from intent_payments.api.errors import register_exception_handlers
from intent_payments.api.middleware import RequestContextMiddleware
from intent_payments.api.routes import router
from intent_payments.config import Settings
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.provider_client import IntentsProviderClient
from intent_payments.infrastructure.rate_limiter import FixedWindowRateLimiter
from intent_payments.infrastructure.redis_client import RedisClient
from intent_payments.infrastructure.token_catalog import TokenCatalog


def create_app(
    settings: Settings,
    database: Database,
    redis_client: RedisClient | None = None,
    rate_limiter: FixedWindowRateLimiter | None = None,
    provider: IntentsProviderClient | None = None,
    token_catalog: TokenCatalog | None = None,
) -> FastAPI:
    """Create the public HTTP API.

    Collaborators are built by the caller and stored on ``app.state`` so request
    dependencies can reach them and tests can substitute them.
    """
    app = FastAPI(
        title="Intent Payments",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.redis_client = redis_client
    app.state.rate_limiter = rate_limiter
    app.state.provider = provider
    app.state.token_catalog = token_catalog

    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        checks = {"database": await request.app.state.database.health_check()}
        client: RedisClient | None = request.app.state.redis_client
        if client is not None:
            checks["redis"] = await client.health_check()
        healthy = all(checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "degraded", "checks": checks},
        )

    return app
