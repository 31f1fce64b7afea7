"""Initial schema: accounts, orders, verification tokens, guest checkout markers, throttles.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("username", sa.String(length=60), nullable=False),
        sa.Column("display_name", sa.String(length=250), nullable=False, server_default=""),
        sa.Column("first_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verification_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("checkout_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_verified_email", sa.String(length=320), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)
    op.create_index("ix_accounts_username", "accounts", ["username"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "customer_id",
            sa.BigInteger(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("billing_email", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("notes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_billing_email", "orders", ["billing_email"])

    op.create_table(
        "verification_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("otp_code", sa.String(length=6), nullable=True),
        sa.Column("otp_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("token_type", sa.String(length=50), nullable=False, server_default="registration"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_verification_tokens_token", "verification_tokens", ["token"], unique=True)
    op.create_index("ix_verification_tokens_owner_id", "verification_tokens", ["owner_id"])
    op.create_index("ix_verification_tokens_email", "verification_tokens", ["email"])
    op.create_index("ix_verification_tokens_expires_at", "verification_tokens", ["expires_at"])
    op.create_index(
        "uq_verification_tokens_active",
        "verification_tokens",
        ["owner_id", "email", "token_type"],
        unique=True,
        postgresql_where=sa.text("verified_at IS NULL"),
    )

    op.create_table(
        "guest_checkout_verifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_guest_checkout_verifications_email", "guest_checkout_verifications", ["email"], unique=True
    )
    op.create_index(
        "ix_guest_checkout_verifications_expires_at", "guest_checkout_verifications", ["expires_at"]
    )

    op.create_table(
        "resend_throttles",
        sa.Column("subject", sa.String(length=96), primary_key=True, nullable=False),
        sa.Column("last_resend_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hour_bucket", sa.String(length=10), nullable=False),
        sa.Column("resend_count", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "sweeper_heartbeat",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("detail", sa.String(length=256), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sweeper_heartbeat")
    op.drop_table("resend_throttles")
    op.drop_index("ix_guest_checkout_verifications_expires_at", table_name="guest_checkout_verifications")
    op.drop_index("ix_guest_checkout_verifications_email", table_name="guest_checkout_verifications")
    op.drop_table("guest_checkout_verifications")
    op.drop_index("uq_verification_tokens_active", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_expires_at", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_email", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_owner_id", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_token", table_name="verification_tokens")
    op.drop_table("verification_tokens")
    op.drop_index("ix_orders_billing_email", table_name="orders")
    op.drop_index("ix_orders_customer_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_accounts_username", table_name="accounts")
    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")
