import json
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.ext.asyncio import AsyncSession

from intent_payments.domain.models import IdempotencyRecord


DEFAULT_TTL_SECONDS = 86_400


class IdempotencyRepository:
    """Response cache keyed by a client supplied idempotency key.

    Records are written once per key (first writer wins) and ignored after
    ``expires_at``. This caches responses; payment state itself is protected by the
    payments natural key and compare-and-set transitions.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def begin(self, key: str) -> IdempotencyRecord | None:
        """Return the cached record for ``key`` (HIT) or None (MISS)."""
        result = await self._session.execute(
            text("""
                SELECT key, status_code, response_body, request_fingerprint,
                       created_at, expires_at
                FROM idempotency_keys
                WHERE key = :key AND expires_at > :now
            """),
            {"key": key, "now": datetime.now(UTC)},
        )
        row = result.fetchone()
        if not row:
            return None
        body = row.response_body
        return IdempotencyRecord(
            key=row.key,
            status_code=row.status_code,
            response_body=json.loads(body) if isinstance(body, str) else body,
            request_fingerprint=row.request_fingerprint,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )

    async def commit(
        self,
        key: str,
        status_code: int,
        body: dict[str, Any],
        fingerprint: str | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> bool:
        """Store the response for ``key``. Returns False if another writer got there first."""
        now = datetime.now(UTC)
        result = await self._session.execute(
            text("""
                INSERT INTO idempotency_keys
                    (key, status_code, response_body, request_fingerprint, created_at, expires_at)
                VALUES
                    (:key, :status_code, CAST(:response_body AS JSONB), :fingerprint,
                     :created_at, :expires_at)
                ON CONFLICT (key) DO UPDATE
                SET status_code = EXCLUDED.status_code,
                    response_body = EXCLUDED.response_body,
                    request_fingerprint = EXCLUDED.request_fingerprint,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                WHERE idempotency_keys.expires_at <= :created_at
                RETURNING key
            """),
            {
                "key": key,
                "status_code": status_code,
                "response_body": json.dumps(body),
                "fingerprint": fingerprint,
                "created_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
        )
        return result.fetchone() is not None

    async def delete_expired(self) -> int:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    DELETE FROM idempotency_keys
                    WHERE expires_at < :now
                """),
                {"now": datetime.now(UTC)},
            ),
        )
        return result.rowcount or 0
