"""Classification of upstream provider status strings."""

from intent_payments.domain.models import CanonicalStatus


STATUS_TABLE: dict[str, CanonicalStatus] = {
    "filled": CanonicalStatus.PAID,
    "executed": CanonicalStatus.PAID,
    "confirmed": CanonicalStatus.PAID,
    "success": CanonicalStatus.PAID,
    "failed": CanonicalStatus.FAILED,
    "reverted": CanonicalStatus.FAILED,
    "canceled": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "error": CanonicalStatus.FAILED,
    "expired": CanonicalStatus.EXPIRED,
    "timeout": CanonicalStatus.EXPIRED,
}


def normalize_status_token(raw: object) -> str:
    if raw is None:
        return ""
    return str(raw).strip().lower()


def map_status(raw: object) -> CanonicalStatus:
    """Map an upstream status string onto the canonical set.

    Total and pure: unknown vocabulary, empty strings and ``None`` all map to
    ``PENDING``.
    """
    return STATUS_TABLE.get(normalize_status_token(raw), CanonicalStatus.PENDING)
