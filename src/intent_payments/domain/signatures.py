import base64
import hashlib
import hmac
from typing import Literal


SignatureEncoding = Literal["base64", "hex"]


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_hmac(secret: str, message: bytes | str, encoding: SignatureEncoding = "hex") -> str:
    digest = hmac.new(_as_bytes(secret), _as_bytes(message), hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    return digest.hex()


def signatures_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(_as_bytes(expected), _as_bytes(presented))


def request_signing_message(nonce: str, method: str, path: str, body: bytes | str) -> bytes:
    """Message covered by request signatures: ``nonce + METHOD + path + body``."""
    return _as_bytes(nonce) + method.upper().encode("ascii") + _as_bytes(path) + _as_bytes(body)


def sign_request(secret: str, nonce: str, method: str, path: str, body: bytes | str) -> str:
    return compute_hmac(secret, request_signing_message(nonce, method, path, body), "hex")


def verify_webhook_signature(
    raw_body: bytes | str,
    signature: str | None,
    secret: str | None,
    encoding: SignatureEncoding = "base64",
    nonce: str | None = None,
) -> bool:
    """Check a provider webhook signature over the raw, unparsed body.

    When the provider sends a nonce the signed message is ``nonce + body``.
    """
    if not secret or not signature:
        return False
    message = _as_bytes(nonce) + _as_bytes(raw_body) if nonce else raw_body
    expected = compute_hmac(secret, message, encoding)
    return signatures_match(expected, signature.strip())
