"""initial ledger schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("source_key", sa.String(length=40), nullable=True),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_updated_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=60), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("income", "expense", "transfer", name="categorykind"),
            nullable=False,
        ),
        *_timestamps(),
    )

    op.create_table(
        "category_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pattern", sa.String(length=200), nullable=False),
        sa.Column(
            "match_type",
            sa.Enum("exact", "contains", "regex", name="rulematchtype"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("source_filter", sa.String(length=40), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_category_rules_active_priority",
        "category_rules",
        ["is_active", "priority", "id"],
    )

    op.create_table(
        "import_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_key", sa.String(length=40), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("mime_type", sa.String(length=120), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "processing", "processed", "failed", name="importstatus"
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("inserted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deleted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warnings_json", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_import_batches_account_status", "import_batches", ["account_id", "status"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("raw_type", sa.String(length=80), nullable=True),
        sa.Column("external_ref", sa.String(length=120), nullable=True),
        sa.Column("bank_category", sa.String(length=200), nullable=True),
        sa.Column("source_key", sa.String(length=40), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column(
            "import_id",
            sa.Integer(),
            sa.ForeignKey("import_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "fingerprint", name="uq_transactions_account_fingerprint"
        ),
        sa.CheckConstraint("amount_cents != 0", name="ck_transactions_amount_nonzero"),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_date_amount", "transactions", ["date", "amount_cents"]
    )

    op.create_table(
        "transaction_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "source",
            sa.Enum("bank", "auto", "manual", name="categorysource"),
            nullable=False,
        ),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("category_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_transaction_categories_confidence_range",
        ),
    )


def downgrade() -> None:
    op.drop_table("transaction_categories")
    op.drop_index("ix_transactions_date_amount", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_import_batches_account_status", table_name="import_batches")
    op.drop_table("import_batches")
    op.drop_index("ix_category_rules_active_priority", table_name="category_rules")
    op.drop_table("category_rules")
    op.drop_table("categories")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
