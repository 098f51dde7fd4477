"""Initial schema: payments, idempotency keys, api keys, webhook deliveries

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.String(40), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payer_address", sa.String(255), nullable=False),
        sa.Column("payer_chain_id", sa.String(64), nullable=False),
        sa.Column("recipient_address", sa.String(255), nullable=False),
        sa.Column("recipient_chain_id", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(255), nullable=False),
        sa.Column("amount_value", sa.Text, nullable=False),
        sa.Column("memo", sa.Text, nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("provider_ref", sa.String(255), nullable=True),
        sa.Column("provider_ref_kind", sa.String(32), nullable=True),
        sa.Column("quote_id", sa.String(255), nullable=True),
        sa.Column("fee_quote", postgresql.JSONB, nullable=True),
        sa.Column("settlement_refs", postgresql.JSONB, nullable=True),
        sa.Column("failure_reason", sa.String(64), nullable=True),
        sa.Column("execution_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'FAILED', 'EXPIRED')",
            name="ck_payments_status",
        ),
    )
    op.create_index(
        "ux_payments_merchant_idempotency_key",
        "payments",
        ["merchant_id", "idempotency_key"],
        unique=True,
    )
    op.create_index("ix_payments_provider_ref", "payments", ["provider_ref"])
    op.create_index("ix_payments_quote_id", "payments", ["quote_id"])
    op.create_index(
        "ix_payments_pending_due",
        "payments",
        ["next_attempt_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(320), primary_key=True),
        sa.Column("status_code", sa.SmallInteger, nullable=False),
        sa.Column("response_body", postgresql.JSONB, nullable=False),
        sa.Column("request_fingerprint", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("scopes", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("secret", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("type IN ('publishable', 'secret')", name="ck_api_keys_type"),
    )
    op.create_index("ix_api_keys_merchant_id", "api_keys", ["merchant_id"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("signature", sa.Text, nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("payment_id", sa.String(40), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_deliveries_payment_id", "webhook_deliveries", ["payment_id"])
    op.create_index("ix_webhook_deliveries_created_at", "webhook_deliveries", ["created_at"])


def downgrade() -> None:
    op.drop_table("webhook_deliveries")
    op.drop_table("api_keys")
    op.drop_table("idempotency_keys")
    op.drop_table("payments")
