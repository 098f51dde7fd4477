class DomainError(Exception):
    """Base exception for domain errors.

    Every subclass carries a stable machine readable ``code`` and the HTTP status
    the API layer renders it with.
    """

    code = "DOMAIN_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationError(DomainError):
    """Raised when input is malformed."""

    code = "INVALID_PARAMS"
    status_code = 400


class InvalidAmountError(ValidationError):
    """Raised when an amount cannot be converted to smallest units."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount: str, reason: str) -> None:
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class WebhookPayloadError(ValidationError):
    """Raised when a webhook body cannot be turned into a WebhookEvent."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Webhook payload rejected: {reason}", code=reason)


class AuthError(DomainError):
    """Raised when a credential is missing or invalid."""

    code = "UNAUTHENTICATED"
    status_code = 401


class ForbiddenError(AuthError):
    """Raised when an API key lacks a required scope."""

    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, missing_scopes: list[str]) -> None:
        self.missing_scopes = missing_scopes
        super().__init__(f"Insufficient permissions, missing scopes: {', '.join(missing_scopes)}")


class SignatureError(AuthError):
    """Raised when an HMAC signature is missing or does not match."""

    code = "INVALID_SIGNATURE"


class RateLimitError(DomainError):
    """Raised when an identifier exceeds one of its rate limit windows."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"Too many requests. Retry after {retry_after}s")


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class PaymentNotFoundError(NotFoundError):
    """Raised when a payment cannot be found for the requesting merchant."""

    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


class ConflictError(DomainError):
    code = "CONFLICT"
    status_code = 409


class PaymentAlreadyFinalizedError(ConflictError):
    """Raised when finalizing a payment that already reached a terminal state."""

    code = "PAYMENT_ALREADY_FINALIZED"

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is already finalized with status {status}")


class IdempotencyKeyReusedError(ConflictError):
    """Raised when an idempotency key is replayed with a different request."""

    code = "IDEMPOTENCY_KEY_REUSED"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__("Idempotency-Key was already used with a different request")


class ProviderError(DomainError):
    """Raised when the intent execution provider fails.

    ``retryable`` separates inconclusive failures (timeouts, 5xx, unreachable) from
    fatal ones (the provider rejected the request).
    """

    code = "PROVIDER_ERROR"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        code: str | None = None,
        upstream_status: int | None = None,
    ) -> None:
        self.upstream_status = upstream_status
        super().__init__(message, code=code)


class ProviderTimeoutError(ProviderError):
    code = "PROVIDER_TIMEOUT"
    status_code = 504


class ProviderUnavailableError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


class ProviderAuthError(ProviderError):
    code = "PROVIDER_UNAUTHORIZED"
    retryable = False


class ProviderRejectedError(ProviderError):
    code = "PROVIDER_REJECTED"
    retryable = False


class ProviderEndpointNotFoundError(ProviderError):
    code = "PROVIDER_ENDPOINT_NOT_FOUND"
    retryable = False

    def __init__(self, tried: list[str]) -> None:
        self.tried = tried
        super().__init__(f"No valid execute endpoint found. Tried: {', '.join(tried)}", upstream_status=404)


class ProviderNotConfiguredError(ProviderError):
    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503
    retryable = False


class InternalError(DomainError):
    code = "INTERNAL_ERROR"
    status_code = 500
