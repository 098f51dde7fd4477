#!/usr/bin/env python3
"""Delete expired idempotency records.

Expired records are already ignored by reads; this only reclaims space. Meant to be
run from cron.
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from intent_payments.config import settings
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.repositories import IdempotencyRepository
from intent_payments.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)
    database = Database(settings.database_url, pool_size=1, max_overflow=0)
    try:
        async with database.session() as session:
            deleted = await IdempotencyRepository(session).delete_expired()
            await session.commit()
        logger.info("idempotency_keys_purged", deleted=deleted)
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
