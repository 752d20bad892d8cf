"""initial schema: transactions and parse_errors

Revision ID: 0001_initial_schema
Revises:
Create Date: 2025-09-05 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="COP"),
        sa.Column("sender_name", sa.String(255), nullable=False),
        sa.Column("account_number", sa.String(10), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("transaction_time", sa.Time(), nullable=False),
        sa.Column("raw_message", sa.Text(), nullable=False),
        sa.Column("parsed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("webhook_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="processed"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("webhook_id", name="uq_transactions_webhook_id"),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "status IN ('processed', 'failed', 'duplicate')",
            name="ck_transactions_status",
        ),
    )
    op.create_index("idx_transactions_date", "transactions", ["transaction_date"])
    op.create_index("idx_transactions_status", "transactions", ["status"])
    op.create_index("idx_transactions_created_at", "transactions", ["created_at"])

    op.create_table(
        "parse_errors",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("raw_message", sa.Text(), nullable=False),
        sa.Column("error_reason", sa.Text(), nullable=False),
        sa.Column("webhook_id", sa.String(255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("idx_parse_errors_webhook", "parse_errors", ["webhook_id"])
    op.create_index("idx_parse_errors_occurred_at", "parse_errors", ["occurred_at"])
    op.create_index("idx_parse_errors_resolved", "parse_errors", ["resolved"])


def downgrade() -> None:
    op.drop_table("parse_errors")
    op.drop_table("transactions")
