from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Bucket, Fund, LedgerEntry, SipContribution
from money import from_cents, from_micros, units_from_scaled


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Range checks happen in LedgerService so the core reports InvalidAmount
    # and InvalidKind whichever surface the request came through.
    amount: Decimal
    kind: str = "debit"
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    payment_method: Optional[str] = Field(default=None, max_length=60)
    notes: Optional[str] = None
    loan_id: Optional[str] = Field(default=None, max_length=80)
    is_pocket_money: bool = False


class RecordOut(BaseModel):
    id: str
    date: date
    category: str
    description: Optional[str]
    payment_method: Optional[str]
    amount: Decimal
    kind: str
    balance_after: Decimal
    notes: Optional[str]
    loan_id: Optional[str]
    is_pocket_money: bool

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "RecordOut":
        return cls(
            id=entry.txn_id,
            date=entry.date,
            category=entry.category,
            description=entry.description,
            payment_method=entry.payment_method,
            amount=from_cents(entry.amount_cents),
            kind=entry.kind.value,
            balance_after=from_cents(entry.balance_after_cents),
            notes=entry.notes,
            loan_id=entry.loan_id,
            is_pocket_money=entry.is_pocket_money,
        )


class MonthDataOut(BaseModel):
    expenses: Decimal = Decimal("0.00")
    home_essentials: Decimal = Decimal("0.00")
    investments: Decimal = Decimal("0.00")
    lend: Decimal = Decimal("0.00")
    savings: Decimal = Decimal("0.00")
    income: Decimal = Decimal("0.00")
    untracked_cashflow: Decimal = Decimal("0.00")

    @classmethod
    def from_totals(cls, totals: dict[Bucket, int]) -> "MonthDataOut":
        return cls(
            **{bucket.value: from_cents(totals.get(bucket, 0)) for bucket in Bucket}
        )


class BalanceSummaryOut(BaseModel):
    balance: Decimal
    savings: Decimal
    month_data: MonthDataOut = Field(serialization_alias="monthData")


class MonthTotalsOut(BaseModel):
    year: int
    month: int
    totals: MonthDataOut


class FundIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fund_name: str = Field(default="", max_length=200)
    category: str = Field(default="", max_length=100)
    contribution_amount: Decimal
    nav_day: Optional[str] = Field(default=None, max_length=2)
    scheme_code: Optional[str] = Field(default=None, max_length=40)
    fund_house: Optional[str] = Field(default=None, max_length=120)


class FundOut(BaseModel):
    scheme_code: str
    fund_name: str
    fund_house: Optional[str]
    category: str
    nav_day: str
    start_date: date
    total_units: Decimal
    schedule: dict[int, Decimal]
    nav_history: dict[int, dict[int, Decimal]]

    @classmethod
    def from_fund(cls, fund: Fund) -> "FundOut":
        nav_history: dict[int, dict[int, Decimal]] = {}
        for nav in sorted(fund.navs, key=lambda n: (n.year, n.month)):
            nav_history.setdefault(nav.year, {})[nav.month] = from_micros(
                nav.nav_micros
            )
        return cls(
            scheme_code=fund.scheme_code,
            fund_name=fund.fund_name,
            fund_house=fund.fund_house,
            category=fund.category,
            nav_day=fund.nav_day,
            start_date=fund.start_date,
            total_units=units_from_scaled(fund.total_units_scaled),
            schedule={s.year: from_cents(s.amount_cents) for s in fund.schedules},
            nav_history=nav_history,
        )


class ScheduleIn(BaseModel):
    amount: Decimal


class ContributionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nav: Decimal
    scheme_code: Optional[str] = Field(default=None, max_length=40)
    fund_name: Optional[str] = Field(default=None, max_length=200)


class NavCorrectionIn(BaseModel):
    nav: Decimal


class ContributionOut(BaseModel):
    scheme_code: str
    units_purchased: Decimal
    new_total_units: Decimal
    amount_applied: Decimal
    nav: Decimal
    record: RecordOut


class SipEntryOut(BaseModel):
    date: date
    scheme_code: str
    fund_name: str
    fund_category: str
    amount: Decimal
    units_purchased: Decimal
    total_units: Decimal
    nav: Decimal
    current_value: Decimal
    transaction_id: str
    expense_transaction_id: str

    @classmethod
    def from_contribution(cls, row: SipContribution) -> "SipEntryOut":
        total_units = units_from_scaled(row.total_units_scaled)
        nav = from_micros(row.nav_micros)
        return cls(
            date=row.date,
            scheme_code=row.scheme_code,
            fund_name=row.fund.fund_name,
            fund_category=row.fund.category,
            amount=from_cents(row.amount_cents),
            units_purchased=units_from_scaled(row.units_scaled),
            total_units=total_units,
            nav=nav,
            current_value=(total_units * nav).quantize(Decimal("0.01")),
            transaction_id=row.transaction_id,
            expense_transaction_id=row.expense_transaction_id,
        )


class HoldingOut(BaseModel):
    scheme_code: str
    fund_name: str
    category: str
    total_units: Decimal
    latest_nav: Optional[Decimal]
    current_value: Optional[Decimal]


class PeriodTotalsDiff(BaseModel):
    year: int
    month: int
    bucket: str
    recorded: Decimal
    replayed: Decimal


class ReplayReportOut(BaseModel):
    user_id: str
    entries: int
    balance: Decimal
    snapshot_balance: Decimal
    savings: Decimal
    snapshot_savings: Decimal
    continuity_breaks: list[str]
    totals_mismatches: list[PeriodTotalsDiff]
    consistent: bool
