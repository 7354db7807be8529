"""ledger core schema

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


BUCKETS = (
    "expenses",
    "home_essentials",
    "investments",
    "lend",
    "savings",
    "income",
    "untracked_cashflow",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("user_id", sa.String(length=120), primary_key=True),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("savings_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "category_totals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=120), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        *[
            sa.Column(f"{bucket}_cents", sa.Integer(), nullable=False, server_default="0")
            for bucket in BUCKETS
        ],
        *_timestamps(),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_totals_user_month"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("txn_id", sa.String(length=80), nullable=False),
        sa.Column("user_id", sa.String(length=120), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("bucket", sa.Enum(*BUCKETS, name="bucket"), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column("payment_method", sa.String(length=60)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "kind", sa.Enum("credit", "debit", name="transactionkind"), nullable=False
        ),
        sa.Column("balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("loan_id", sa.String(length=80)),
        sa.Column(
            "is_pocket_money", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "source",
            sa.Enum("manual", "sip", name="entrysource"),
            nullable=False,
            server_default="manual",
        ),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "txn_id", name="uq_ledger_user_txn_id"),
        sa.CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
    )
    op.create_index(
        "ix_ledger_user_period", "ledger_entries", ["user_id", "year", "month", "id"]
    )
    op.create_index("ix_ledger_user_date", "ledger_entries", ["user_id", "date"])

    op.create_table(
        "funds",
        sa.Column("scheme_code", sa.String(length=40), primary_key=True),
        sa.Column("fund_name", sa.String(length=200), nullable=False),
        sa.Column("fund_house", sa.String(length=120)),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("nav_day", sa.String(length=2), nullable=False, server_default="10"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "total_units_scaled", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
        sa.CheckConstraint("total_units_scaled >= 0", name="ck_fund_units_positive"),
    )

    op.create_table(
        "fund_schedules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "scheme_code",
            sa.String(length=40),
            sa.ForeignKey("funds.scheme_code"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("scheme_code", "year", name="uq_fund_schedule_year"),
        sa.CheckConstraint("amount_cents > 0", name="ck_fund_schedule_amount_positive"),
    )

    op.create_table(
        "fund_navs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "scheme_code",
            sa.String(length=40),
            sa.ForeignKey("funds.scheme_code"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("nav_micros", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("scheme_code", "year", "month", name="uq_fund_nav_month"),
        sa.CheckConstraint("nav_micros > 0", name="ck_fund_nav_positive"),
    )

    op.create_table(
        "sip_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=120), nullable=False),
        sa.Column(
            "scheme_code",
            sa.String(length=40),
            sa.ForeignKey("funds.scheme_code"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("nav_micros", sa.Integer(), nullable=False),
        sa.Column("units_scaled", sa.Integer(), nullable=False),
        sa.Column("total_units_scaled", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.String(length=80), nullable=False),
        sa.Column("expense_transaction_id", sa.String(length=80), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("scheme_code", "year", "month", name="uq_sip_fund_month"),
    )
    op.create_index("ix_sip_user_year", "sip_contributions", ["user_id", "year"])


def downgrade():
    op.drop_index("ix_sip_user_year", table_name="sip_contributions")
    op.drop_table("sip_contributions")
    op.drop_table("fund_navs")
    op.drop_table("fund_schedules")
    op.drop_table("funds")
    op.drop_index("ix_ledger_user_date", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_period", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("category_totals")
    op.drop_table("accounts")
