from typing import cast

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from intent_payments.domain.exceptions import DomainError, ProviderError, RateLimitError


logger = structlog.get_logger()


def error_body(error: DomainError) -> dict[str, object]:
    body: dict[str, object] = {"code": error.code, "message": error.message}
    if isinstance(error, ProviderError):
        body["retryable"] = error.retryable
    return body


async def domain_error_handler(request: Request, error: Exception) -> JSONResponse:
    exc = cast(DomainError, error)
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)

    log = logger.bind(path=request.url.path, code=exc.code, status_code=exc.status_code)
    if exc.status_code >= 500:
        log.error("request_failed", error=exc.message)
    else:
        log.info("request_rejected", error=exc.message)

    return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = cast(RequestValidationError, exc).errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(status_code=400, content={"code": "INVALID_PARAMS", "message": message})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"code": "INTERNAL_ERROR", "message": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
