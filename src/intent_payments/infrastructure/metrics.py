import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram


HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "route", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    ["method", "route"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0],
)

RATE_LIMIT_EXCEEDED_TOTAL = Counter(
    "rate_limit_exceeded_total",
    "Total number of rate limited requests",
    ["identifier_type"],
)

IDEMPOTENT_REPLAYS_TOTAL = Counter(
    "idempotent_replays_total",
    "Responses served from the idempotency store",
    ["route"],
)

PAYMENT_TRANSITIONS_TOTAL = Counter(
    "payment_transitions_total",
    "Payment state transitions applied",
    ["to_status", "source"],
)

PAYMENT_TRANSITION_NOOPS_TOTAL = Counter(
    "payment_transition_noops_total",
    "Transitions skipped because the payment was already terminal",
    ["source"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Inbound provider webhooks by outcome",
    ["outcome", "reason"],
)

PROVIDER_REQUESTS_TOTAL = Counter(
    "provider_requests_total",
    "Calls to the intent execution provider",
    ["operation", "outcome"],
)

PROVIDER_REQUEST_DURATION = Histogram(
    "provider_request_duration_seconds",
    "Intent execution provider call duration",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0],
)

RECONCILER_PENDING_PAYMENTS = Gauge(
    "reconciler_pending_payments",
    "Pending payments picked up in the last reconciler batch",
)


P = ParamSpec("P")
R = TypeVar("R")


def track_provider_call(
    operation: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            outcome = "ok"
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                outcome = getattr(e, "code", type(e).__name__)
                raise
            finally:
                PROVIDER_REQUEST_DURATION.labels(operation=operation).observe(time.perf_counter() - start)
                PROVIDER_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()

        return wrapper

    return decorator
