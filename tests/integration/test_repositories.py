"""Integration tests for the PostgreSQL repositories."""

import importlib.util
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import text
from testcontainers.postgres import PostgresContainer

from intent_payments.domain.models import ApiKeyType, Payment, PaymentStatus, SettlementRef
from intent_payments.infrastructure.database import Database
from intent_payments.infrastructure.repositories import (
    ApiKeyRepository,
    IdempotencyRepository,
    PaymentRepository,
)
from intent_payments.infrastructure.repositories.api_keys import hash_api_key
from tests.conftest import create_payment_request


pytestmark = pytest.mark.integration

MIGRATION = Path(__file__).parents[2] / "alembic" / "versions" / "001_initial_schema.py"


def _run_migration(connection) -> None:
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    with Operations.context(MigrationContext.configure(connection)):
        module.upgrade()


@pytest.fixture(scope="module")
def postgres_container():
    """Start PostgreSQL container for tests."""
    with PostgresContainer("postgres:16-alpine", driver="asyncpg") as container:
        yield container


@pytest.fixture
async def database(postgres_container) -> AsyncIterator[Database]:
    """Create Database with a freshly migrated schema."""
    db = Database(postgres_container.get_connection_url(), pool_size=2, max_overflow=0)
    async with db.engine.begin() as conn:
        await conn.execute(text("DROP SCHEMA public CASCADE"))
        await conn.execute(text("CREATE SCHEMA public"))
        await conn.run_sync(_run_migration)
    yield db
    await db.close()


async def _reserve(database: Database, merchant_id: str = "merchant-001", key: str = "order-1") -> Payment:
    payment = Payment.create(merchant_id=merchant_id, request=create_payment_request(idempotency_key=key))
    async with database.session() as session:
        assert await PaymentRepository(session).reserve(payment) is True
        await session.commit()
    return payment


class TestPaymentRepository:
    @pytest.mark.asyncio
    async def test_reserve_is_unique_per_merchant_key(self, database: Database) -> None:
        payment = await _reserve(database)
        duplicate = Payment.create(merchant_id="merchant-001", request=create_payment_request(idempotency_key="order-1"))

        async with database.session() as session:
            repo = PaymentRepository(session)
            assert await repo.reserve(duplicate) is False
            await session.rollback()

            stored = await repo.get_by_natural_key("merchant-001", "order-1")
            assert stored is not None
            assert stored.id == payment.id

    @pytest.mark.asyncio
    async def test_same_key_for_other_merchant_allowed(self, database: Database) -> None:
        await _reserve(database, merchant_id="merchant-001")
        await _reserve(database, merchant_id="merchant-002")

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, database: Database) -> None:
        payment = await _reserve(database)

        async with database.session() as session:
            repo = PaymentRepository(session)
            paid = await repo.transition(
                payment.id,
                PaymentStatus.SUCCESS,
                settlement=[SettlementRef(chain_id="eth", tx_hash="0xabc")],
            )
            late = await repo.transition(payment.id, PaymentStatus.FAILED, failure_reason="PROVIDER_FAILED")
            await session.commit()

            assert paid is not None
            assert paid.status == PaymentStatus.SUCCESS
            assert paid.settlement == [SettlementRef(chain_id="eth", tx_hash="0xabc")]
            assert late is None

            stored = await repo.get(payment.id)
            assert stored is not None
            assert stored.status == PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_lookup_by_reference_and_quote(self, database: Database) -> None:
        payment = await _reserve(database)

        async with database.session() as session:
            repo = PaymentRepository(session)
            recorded = await repo.record_execution(payment.id, "0xdep", "q-1", provider_ref_kind="depositAddress")
            await session.commit()

            assert recorded is not None
            assert recorded.provider_ref_kind == "depositAddress"

            assert (await repo.get_by_reference(payment.id)).id == payment.id
            assert (await repo.get_by_reference("0xdep")).id == payment.id
            assert (await repo.get_by_quote_id("q-1")).id == payment.id
            assert await repo.get_for_merchant("merchant-999", payment.id) is None

    @pytest.mark.asyncio
    async def test_claim_pending_leases_due_payments(self, database: Database) -> None:
        payment = await _reserve(database)

        async with database.session() as session:
            repo = PaymentRepository(session)
            await repo.schedule_next_attempt(payment.id, datetime.now(UTC) - timedelta(seconds=1))
            lease_until = datetime.now(UTC) + timedelta(minutes=1)

            claimed = await repo.claim_pending(10, lease_until)
            again = await repo.claim_pending(10, lease_until)
            await session.commit()

        assert [p.id for p in claimed] == [payment.id]
        assert claimed[0].execution_attempts == 1
        assert again == []

    @pytest.mark.asyncio
    async def test_expire_pending_before(self, database: Database) -> None:
        payment = await _reserve(database)

        async with database.session() as session:
            repo = PaymentRepository(session)
            expired = await repo.expire_pending_before(datetime.now(UTC) + timedelta(seconds=1), limit=10)
            await session.commit()

            assert expired == [payment.id]
            stored = await repo.get(payment.id)
            assert stored.status == PaymentStatus.EXPIRED
            assert stored.failure_reason == "EXPIRED_UNCONFIRMED"


class TestIdempotencyRepository:
    @pytest.mark.asyncio
    async def test_first_writer_wins(self, database: Database) -> None:
        async with database.session() as session:
            repo = IdempotencyRepository(session)
            assert await repo.commit("m:k", 201, {"n": 1}, fingerprint="f1") is True
            assert await repo.commit("m:k", 200, {"n": 2}, fingerprint="f2") is False
            await session.commit()

            record = await repo.begin("m:k")

        assert record is not None
        assert record.status_code == 201
        assert record.response_body == {"n": 1}
        assert record.request_fingerprint == "f1"

    @pytest.mark.asyncio
    async def test_expired_record_is_a_miss_and_replaceable(self, database: Database) -> None:
        async with database.session() as session:
            repo = IdempotencyRepository(session)
            await repo.commit("m:old", 201, {"n": 1}, ttl_seconds=-1)
            await session.commit()

            assert await repo.begin("m:old") is None
            assert await repo.commit("m:old", 200, {"n": 2}) is True
            assert await repo.delete_expired() == 0
            await session.commit()

            record = await repo.begin("m:old")

        assert record is not None
        assert record.response_body == {"n": 2}


class TestApiKeyRepository:
    @pytest.mark.asyncio
    async def test_find_active_by_key(self, database: Database) -> None:
        async with database.session() as session:
            await session.execute(
                text("""
                    INSERT INTO api_keys (id, merchant_id, key_hash, type, scopes, secret)
                    VALUES (:id, :merchant_id, :key_hash, 'secret', CAST(:scopes AS JSONB), :secret)
                """),
                {
                    "id": "key_1",
                    "merchant_id": "merchant-001",
                    "key_hash": hash_api_key("sk_test_1"),
                    "scopes": '["payments:read"]',
                    "secret": "whsec",
                },
            )
            await session.commit()

            repo = ApiKeyRepository(session)
            key = await repo.find_active_by_key("sk_test_1")
            missing = await repo.find_active_by_key("sk_test_2")

        assert key is not None
        assert key.type is ApiKeyType.SECRET
        assert key.scopes == ["payments:read"]
        assert missing is None
