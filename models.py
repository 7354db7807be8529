from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionKind(str, Enum):
    credit = "credit"
    debit = "debit"


class EntrySource(str, Enum):
    manual = "manual"
    sip = "sip"


class Bucket(str, Enum):
    expenses = "expenses"
    home_essentials = "home_essentials"
    investments = "investments"
    lend = "lend"
    savings = "savings"
    income = "income"
    untracked_cashflow = "untracked_cashflow"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(120), primary_key=True)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    savings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class CategoryTotal(Base, TimestampMixin):
    __tablename__ = "category_totals"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_totals_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    expenses_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    home_essentials_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    investments_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lend_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    savings_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    untracked_cashflow_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    def get_bucket(self, bucket: Bucket) -> int:
        return int(getattr(self, f"{bucket.value}_cents") or 0)

    def set_bucket(self, bucket: Bucket, cents: int) -> None:
        setattr(self, f"{bucket.value}_cents", cents)


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    txn_id: Mapped[str] = mapped_column(String(80), nullable=False)
    user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    bucket: Mapped[Bucket] = mapped_column(SAEnum(Bucket), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    payment_method: Mapped[Optional[str]] = mapped_column(String(60))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    loan_id: Mapped[Optional[str]] = mapped_column(String(80))
    is_pocket_money: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    source: Mapped[EntrySource] = mapped_column(
        SAEnum(EntrySource), nullable=False, default=EntrySource.manual
    )

    __table_args__ = (
        UniqueConstraint("user_id", "txn_id", name="uq_ledger_user_txn_id"),
        Index("ix_ledger_user_period", "user_id", "year", "month", "id"),
        Index("ix_ledger_user_date", "user_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
    )

    @property
    def signed_cents(self) -> int:
        if self.kind == TransactionKind.credit:
            return self.amount_cents
        return -self.amount_cents


class Fund(Base, TimestampMixin):
    __tablename__ = "funds"

    scheme_code: Mapped[str] = mapped_column(String(40), primary_key=True)
    fund_name: Mapped[str] = mapped_column(String(200), nullable=False)
    fund_house: Mapped[Optional[str]] = mapped_column(String(120))
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    nav_day: Mapped[str] = mapped_column(String(2), nullable=False, default="10")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Ten-thousandths of a unit.
    total_units_scaled: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    schedules: Mapped[list["FundSchedule"]] = relationship(
        "FundSchedule", back_populates="fund", order_by="FundSchedule.year"
    )
    navs: Mapped[list["FundNav"]] = relationship("FundNav", back_populates="fund")

    __table_args__ = (
        CheckConstraint("total_units_scaled >= 0", name="ck_fund_units_positive"),
    )


class FundSchedule(Base, TimestampMixin):
    __tablename__ = "fund_schedules"
    __table_args__ = (
        UniqueConstraint("scheme_code", "year", name="uq_fund_schedule_year"),
        CheckConstraint("amount_cents > 0", name="ck_fund_schedule_amount_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheme_code: Mapped[str] = mapped_column(
        ForeignKey("funds.scheme_code"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    fund: Mapped["Fund"] = relationship("Fund", back_populates="schedules")


class FundNav(Base, TimestampMixin):
    __tablename__ = "fund_navs"
    __table_args__ = (
        UniqueConstraint("scheme_code", "year", "month", name="uq_fund_nav_month"),
        CheckConstraint("nav_micros > 0", name="ck_fund_nav_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheme_code: Mapped[str] = mapped_column(
        ForeignKey("funds.scheme_code"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    nav_micros: Mapped[int] = mapped_column(Integer, nullable=False)

    fund: Mapped["Fund"] = relationship("Fund", back_populates="navs")


class SipContribution(Base, TimestampMixin):
    __tablename__ = "sip_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(120), nullable=False)
    scheme_code: Mapped[str] = mapped_column(
        ForeignKey("funds.scheme_code"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    nav_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    units_scaled: Mapped[int] = mapped_column(Integer, nullable=False)
    total_units_scaled: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(80), nullable=False)
    expense_transaction_id: Mapped[str] = mapped_column(String(80), nullable=False)

    fund: Mapped["Fund"] = relationship("Fund")

    __table_args__ = (
        UniqueConstraint(
            "scheme_code", "year", "month", name="uq_sip_fund_month"
        ),
        Index("ix_sip_user_year", "user_id", "year"),
    )
