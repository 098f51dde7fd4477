import hashlib
import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from intent_payments.domain.models import ApiKey, ApiKeyType


def hash_api_key(presented_key: str) -> str:
    return hashlib.sha256(presented_key.encode("utf-8")).hexdigest()


class ApiKeyRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_active_by_key(self, presented_key: str) -> ApiKey | None:
        result = await self._session.execute(
            text("""
                SELECT id, merchant_id, type, scopes, secret, revoked_at
                FROM api_keys
                WHERE key_hash = :key_hash AND revoked_at IS NULL
            """),
            {"key_hash": hash_api_key(presented_key)},
        )
        row = result.fetchone()
        if not row:
            return None
        scopes = json.loads(row.scopes) if isinstance(row.scopes, str) else row.scopes
        return ApiKey(
            id=row.id,
            merchant_id=row.merchant_id,
            type=ApiKeyType(row.type),
            scopes=list(scopes or []),
            secret=row.secret,
            revoked_at=row.revoked_at,
        )
