"""initial schema

Revision ID: 202610191200
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191200"
down_revision = None
branch_labels = None
depends_on = None

CRYPTO = sa.Numeric(28, 10)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit_card",
                "investment",
                "cash",
                "other",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("opening_balance_cents", sa.Integer(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])
    op.create_index("ix_accounts_user_active", "accounts", ["user_id", "is_active"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("description", sa.Text()),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type", "name", name="uq_category_user_type_name"
        ),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=9)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_tag_user_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "(type = 'transfer' AND to_account_id IS NOT NULL) "
            "OR (type != 'transfer' AND to_account_id IS NULL)",
            name="ck_transactions_transfer_destination",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_to_account", "transactions", ["to_account_id"])
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("person_name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("due_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_date", sa.Date()),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            unique=True,
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
    )
    op.create_index("ix_debts_user_id", "debts", ["user_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum(
                "weekly", "monthly", "quarterly", "yearly", name="subscriptionfrequency"
            ),
            nullable=False,
        ),
        sa.Column("next_billing_date", sa.Date(), nullable=False),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "cancelled", name="subscriptionstatus"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
        sa.CheckConstraint(
            "billing_day BETWEEN 1 AND 31", name="ck_subscriptions_billing_day"
        ),
    )
    op.create_index(
        "ix_subscriptions_due", "subscriptions", ["status", "next_billing_date"]
    )
    op.create_index("ix_subscriptions_user", "subscriptions", ["user_id"])

    op.create_table(
        "crypto_holdings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("symbol", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount", CRYPTO, nullable=False),
        sa.Column("purchase_price", CRYPTO, nullable=False),
        sa.Column("purchase_date", sa.Date(), nullable=False),
        sa.Column("purchase_fee", CRYPTO, nullable=False),
        sa.Column("current_price", CRYPTO, nullable=False),
        sa.Column("last_price_update", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column(
            "status",
            sa.Enum("active", "sold", name="cryptoholdingstatus"),
            nullable=False,
        ),
        sa.Column("sale_price", CRYPTO),
        sa.Column("sale_date", sa.Date()),
        sa.Column("sale_fee", CRYPTO),
        sa.Column("sale_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "sale_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_crypto_amount_positive"),
    )
    op.create_index("ix_crypto_holdings_user_id", "crypto_holdings", ["user_id"])
    op.create_index("ix_crypto_holdings_symbol", "crypto_holdings", ["symbol"])

    op.create_table(
        "crypto_prices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol", sa.String(length=20), nullable=False, unique=True),
        sa.Column("price", CRYPTO, nullable=False),
        sa.Column("market_cap", sa.Numeric(28, 2)),
        sa.Column("volume_24h", sa.Numeric(28, 2)),
        sa.Column("percent_change_24h", sa.Numeric(12, 6)),
        sa.Column("percent_change_7d", sa.Numeric(12, 6)),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "crypto_price_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("symbol", sa.String(length=20), nullable=False),
        sa.Column("price", CRYPTO, nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_crypto_price_history_symbol_ts",
        "crypto_price_history",
        ["symbol", "timestamp"],
    )


def downgrade():
    op.drop_table("crypto_price_history")
    op.drop_table("crypto_prices")
    op.drop_table("crypto_holdings")
    op.drop_table("subscriptions")
    op.drop_table("debts")
    op.drop_table("transaction_tags")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_table("categories")
    op.drop_table("accounts")
