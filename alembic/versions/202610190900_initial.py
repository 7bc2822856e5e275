"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_KIND = sa.Enum("income", "expense", "transfer", name="transactionkind")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column("to_account_id", sa.String(length=32)),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("recurring_rule_id", sa.String(length=32)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_rule", "transactions", ["user_id", "recurring_rule_id"]
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("account_id", sa.String(length=32), nullable=False),
        sa.Column("to_account_id", sa.String(length=32)),
        sa.Column("note", sa.Text()),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column("max_occurrences", sa.Integer()),
        sa.Column("materialized_count", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("liability_id", sa.String(length=32)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        sa.CheckConstraint(
            "max_occurrences IS NULL OR max_occurrences > 0",
            name="ck_rule_max_occurrences_positive",
        ),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("asset_type", sa.String(length=40), nullable=False),
        sa.Column("cost_basis_cents", sa.Integer(), nullable=False),
        sa.Column("current_value_cents", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "liabilities",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("liability_type", sa.String(length=40), nullable=False),
        sa.Column("base_balance_cents", sa.Integer(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("interest_rate", sa.Float()),
        sa.Column("monthly_payment_cents", sa.Integer()),
        sa.Column("payment_account_id", sa.String(length=32)),
        sa.Column("payment_day", sa.Integer()),
        sa.Column("payment_periods", sa.Integer()),
        sa.Column("start_date", sa.Date()),
        *_timestamps(),
    )


def downgrade():
    op.drop_table("liabilities")
    op.drop_table("accounts")
    op.drop_table("recurring_rules")
    op.drop_index("ix_transactions_user_rule", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
