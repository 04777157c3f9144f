"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit",
                "cash",
                "investment",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_accounts_owner", "accounts", ["owner_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "category_keywords",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("keyword", sa.String(length=100), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint(
            "(type = 'transfer') = (to_account_id IS NOT NULL)",
            name="ck_transactions_transfer_destination",
        ),
        sa.CheckConstraint(
            "to_account_id IS NULL OR to_account_id != account_id",
            name="ck_transactions_distinct_accounts",
        ),
        sa.CheckConstraint(
            "(type = 'expense' AND amount_cents <= 0)"
            " OR (type != 'expense' AND amount_cents >= 0)",
            name="ck_transactions_amount_sign",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_to_account_date", "transactions", ["to_account_id", "date"]
    )

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.DateTime(), nullable=False),
        sa.Column("type", sa.Enum("debit", "credit", name="eventtype"), nullable=False),
        sa.Column(
            "recurring",
            sa.Enum(
                "weekly", "monthly", "quarterly", "yearly", name="recurrencefrequency"
            ),
        ),
        sa.Column("confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        *_timestamps(),
    )
    op.create_index(
        "ix_calendar_events_user_due", "calendar_events", ["user_id", "due_date"]
    )

    op.create_table(
        "investment_assets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "balance_mirrored", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "current_value_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_valuation_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_investment_assets_account_mirrored",
        "investment_assets",
        ["account_id", "balance_mirrored"],
    )


def downgrade():
    op.drop_index("ix_investment_assets_account_mirrored", table_name="investment_assets")
    op.drop_table("investment_assets")
    op.drop_index("ix_calendar_events_user_due", table_name="calendar_events")
    op.drop_table("calendar_events")
    op.drop_index("ix_transactions_to_account_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("category_keywords")
    op.drop_table("categories")
    op.drop_index("ix_accounts_owner", table_name="accounts")
    op.drop_table("accounts")
