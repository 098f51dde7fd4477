from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import SQLAlchemyError

from intent_payments.application.unit_of_work import UnitOfWork
from intent_payments.domain.exceptions import AuthError, ForbiddenError, SignatureError
from intent_payments.domain.models import ApiKeyType
from intent_payments.domain.signatures import compute_hmac, request_signing_message, signatures_match


logger = structlog.get_logger()


SCOPE_PAYMENTS_READ = "payments:read"
SCOPE_PAYMENTS_WRITE = "payments:write"


@dataclass(frozen=True)
class AuthContext:
    merchant_id: str
    api_key_id: str
    key_type: ApiKeyType
    scopes: frozenset[str] = field(default_factory=frozenset)
    secret: str | None = None

    @property
    def requires_signature(self) -> bool:
        return self.key_type is ApiKeyType.SECRET


class Authenticator:
    """Resolves API keys to merchants and checks request signatures.

    Lookup failures deny the request; nothing here ever lets a request through
    because a dependency was unavailable.
    """

    def __init__(self, uow: UnitOfWork) -> None:
        self.uow = uow

    async def authenticate(self, presented_key: str | None, required_scopes: list[str]) -> AuthContext:
        if not presented_key:
            raise AuthError("Missing API key")

        try:
            api_key = await self.uow.api_keys.find_active_by_key(presented_key)
        except SQLAlchemyError as e:
            logger.error("api_key_lookup_failed", error=str(e))
            raise AuthError("Unable to verify API key") from e

        if api_key is None or not api_key.is_active:
            raise AuthError("Invalid or revoked API key", code="INVALID_API_KEY")

        missing = [scope for scope in required_scopes if scope not in api_key.scopes]
        if missing:
            logger.info("api_key_scope_denied", api_key_id=api_key.id, missing_scopes=missing)
            raise ForbiddenError(missing)

        return AuthContext(
            merchant_id=api_key.merchant_id,
            api_key_id=api_key.id,
            key_type=api_key.type,
            scopes=frozenset(api_key.scopes),
            secret=api_key.secret,
        )

    def verify_request(
        self,
        ctx: AuthContext,
        signature: str | None,
        nonce: str | None,
        method: str,
        path: str,
        body: bytes,
    ) -> None:
        """HMAC-SHA256 over ``nonce + METHOD + path + body``; only secret keys are checked."""
        if not ctx.requires_signature:
            return
        if not signature or not nonce:
            raise SignatureError("Missing X-Signature or X-Nonce header", code="MISSING_SIGNATURE")
        if not ctx.secret:
            logger.error("api_key_missing_secret", api_key_id=ctx.api_key_id)
            raise SignatureError("Signature cannot be verified for this key")

        expected = compute_hmac(ctx.secret, request_signing_message(nonce, method, path, body), "hex")
        if not signatures_match(expected, signature.strip().lower()):
            logger.warning("request_signature_mismatch", api_key_id=ctx.api_key_id, path=path)
            raise SignatureError("Request signature does not match")
