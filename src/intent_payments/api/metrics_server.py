from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from intent_payments.http_server import UvicornServer


def create_metrics_app() -> FastAPI:
    """Create FastAPI application for metrics endpoint."""
    app = FastAPI(
        title="Intent Payments Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    return app


class MetricsServer(UvicornServer):
    """Prometheus scrape endpoint on its own port."""

    name = "metrics_server"

    def __init__(self, host: str = "0.0.0.0", port: int = 9090) -> None:
        super().__init__(create_metrics_app(), host=host, port=port)
