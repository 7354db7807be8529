from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import (
    AmbiguousFund,
    BackdatedEntry,
    CommitFailure,
    ContributionAlreadyApplied,
    DuplicateFund,
    FundNotFound,
    InvalidAmount,
    InvalidKind,
    InvalidNav,
    MissingField,
    NoScheduledAmount,
    StoreUnavailable,
)
from identifiers import (
    derive_scheme_code,
    sip_expense_id,
    sip_transaction_id,
    transaction_id,
)
from locks import KeyedLocks, fund_key, ledger_locks, user_key
from models import (
    Bucket,
    CategoryTotal,
    EntrySource,
    Fund,
    FundNav,
    FundSchedule,
    LedgerEntry,
    SipContribution,
    TransactionKind,
)
from money import (
    MAX_CENTS,
    MAX_NAV_MICROS,
    from_cents,
    from_micros,
    to_cents,
    to_decimal,
    to_micros,
    units_for,
    units_from_scaled,
    units_to_scaled,
)
from periods import LedgerPeriod, local_now, local_today
from schemas import (
    BalanceSummaryOut,
    FundIn,
    HoldingOut,
    MonthDataOut,
    MonthTotalsOut,
    TransactionIn,
)
from store import LedgerStore, ReplayResult


logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
SIP_CATEGORY = "Investment"
SIP_PAYMENT_METHOD = "Auto"
DEFAULT_NAV_DAY = "10"

CATEGORY_BUCKETS: dict[str, Bucket] = {
    "expense": Bucket.expenses,
    "expenses": Bucket.expenses,
    "home essentials": Bucket.home_essentials,
    "home_essentials": Bucket.home_essentials,
    "health": Bucket.investments,
    "investment": Bucket.investments,
    "investments": Bucket.investments,
    "lend": Bucket.lend,
    "savings": Bucket.savings,
    "income": Bucket.income,
}


def bucket_for_category(category: Optional[str]) -> Bucket:
    """Every category lands in exactly one bucket, so buckets partition flow."""
    key = (category or "").strip().lower()
    return CATEGORY_BUCKETS.get(key, Bucket.untracked_cashflow)


def parse_kind(value: object) -> TransactionKind:
    raw = str(value or "").strip().lower()
    try:
        return TransactionKind(raw)
    except ValueError as exc:
        raise InvalidKind(f"Invalid transaction kind: {value!r}") from exc


def parse_positive_cents(value: object) -> int:
    try:
        amount = to_decimal(value)  # type: ignore[arg-type]
    except ValueError as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {value!r}")
    cents = to_cents(amount)
    if cents <= 0:
        raise InvalidAmount(f"Amount {value!r} rounds to zero")
    if cents > MAX_CENTS:
        raise InvalidAmount(f"Amount {value!r} exceeds the supported maximum")
    return cents


def parse_nav_micros(value: object) -> int:
    try:
        nav = to_decimal(value)  # type: ignore[arg-type]
    except ValueError as exc:
        raise InvalidNav(f"Invalid NAV: {value!r}") from exc
    if not nav.is_finite() or nav <= 0:
        raise InvalidNav(f"NAV must be positive, got {value!r}")
    micros = to_micros(nav)
    if micros <= 0:
        raise InvalidNav(f"NAV {value!r} is below the recorded precision")
    if micros > MAX_NAV_MICROS:
        raise InvalidNav(f"NAV {value!r} exceeds the supported maximum")
    return micros


class LedgerService:
    def __init__(
        self,
        session: Session,
        user_id: str,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        if not user_id:
            raise MissingField("User id is required")
        self.session = session
        self.user_id = user_id
        self.locks = locks or ledger_locks
        self.store = LedgerStore(session)

    def record_transaction(
        self,
        data: TransactionIn,
        *,
        at: Optional[datetime] = None,
        txn_id: Optional[str] = None,
        source: EntrySource = EntrySource.manual,
    ) -> LedgerEntry:
        kind = parse_kind(data.kind)
        amount_cents = parse_positive_cents(data.amount)
        category = (data.category or "").strip() or UNCATEGORIZED
        bucket = bucket_for_category(category)
        at = at or local_now()
        day = at.date()
        period = LedgerPeriod.of(day)

        with self.locks.hold(user_key(self.user_id)):
            # Balances carry forward in append order, so a period closes once
            # a later one has entries.
            newest = self.store.newest_entry(self.user_id)
            if newest is not None and (newest.year, newest.month) > (
                period.year,
                period.month,
            ):
                raise BackdatedEntry(
                    f"Cannot record into {period.slug}; ledger for {self.user_id} "
                    f"already has entries in {newest.year:04d}-{newest.month:02d}"
                )
            snapshot = self.store.load_snapshot(self.user_id, period)
            last = self.store.last_entry(self.user_id, period)
            last_balance = (
                last.balance_after_cents if last is not None else snapshot.balance_cents
            )
            if kind == TransactionKind.credit:
                new_balance = last_balance + amount_cents
            else:
                new_balance = last_balance - amount_cents

            if txn_id is None:
                sequence = self.store.count_for_day(self.user_id, day)
                txn_id = transaction_id(day, category, sequence)

            entry = LedgerEntry(
                txn_id=txn_id,
                user_id=self.user_id,
                year=period.year,
                month=period.month,
                date=day,
                occurred_at=at,
                category=category,
                bucket=bucket,
                description=data.description,
                payment_method=data.payment_method,
                amount_cents=amount_cents,
                kind=kind,
                balance_after_cents=new_balance,
                notes=data.notes,
                loan_id=data.loan_id,
                is_pocket_money=data.is_pocket_money,
                source=source,
            )
            snapshot.balance_cents = new_balance
            snapshot.totals[bucket] += amount_cents
            if bucket == Bucket.savings:
                snapshot.savings_cents += amount_cents
            self.store.append_and_commit(self.user_id, period, entry, snapshot)
        return entry

    def balance_summary(self, *, today: Optional[date] = None) -> BalanceSummaryOut:
        period = LedgerPeriod.of(today or local_today())
        snapshot = self.store.load_snapshot(self.user_id, period)
        return BalanceSummaryOut(
            balance=from_cents(snapshot.balance_cents),
            savings=from_cents(snapshot.savings_cents),
            month_data=MonthDataOut.from_totals(snapshot.totals),
        )

    def period_log(self, period: LedgerPeriod) -> list[LedgerEntry]:
        return self.store.load_period_log(self.user_id, period)

    def monthly_totals(self, year: int) -> list[MonthTotalsOut]:
        stmt = (
            select(CategoryTotal)
            .where(CategoryTotal.user_id == self.user_id, CategoryTotal.year == year)
            .order_by(CategoryTotal.month)
        )
        try:
            rows = self.session.scalars(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read totals for {self.user_id}") from exc
        return [
            MonthTotalsOut(
                year=row.year,
                month=row.month,
                totals=MonthDataOut.from_totals(
                    {bucket: row.get_bucket(bucket) for bucket in Bucket}
                ),
            )
            for row in rows
        ]

    def verify(self) -> ReplayResult:
        result = self.store.replay(self.user_id)
        if not result.consistent:
            logger.warning(
                f"ledger_verify: user={self.user_id} inconsistent "
                f"breaks={len(result.continuity_breaks)} "
                f"mismatches={len(result.totals_mismatches())}"
            )
        return result

    def rebuild(self) -> ReplayResult:
        with self.locks.hold(user_key(self.user_id)):
            return self.store.rebuild(self.user_id)


@dataclass(frozen=True)
class ContributionResult:
    scheme_code: str
    units_purchased: Decimal
    new_total_units: Decimal
    amount_applied: Decimal
    nav: Decimal
    entry: LedgerEntry


class FundService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[str] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.locks = locks or ledger_locks

    def list_all(self) -> list[Fund]:
        stmt = select(Fund).order_by(Fund.fund_name, Fund.scheme_code)
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not read fund registry") from exc

    def get(self, scheme_code: str) -> Fund:
        try:
            fund = self.session.scalar(
                select(Fund)
                .where(Fund.scheme_code == scheme_code)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not read fund registry") from exc
        if not fund:
            raise FundNotFound(f"Fund {scheme_code} not found")
        return fund

    def _commit(self, what: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise CommitFailure(f"Could not save {what}") from exc

    def register(self, data: FundIn, *, at: Optional[datetime] = None) -> Fund:
        fund_name = (data.fund_name or "").strip()
        category = (data.category or "").strip()
        if not fund_name:
            raise MissingField("Fund name is required")
        if not category:
            raise MissingField("Fund category is required")
        amount_cents = parse_positive_cents(data.contribution_amount)
        at = at or local_now()
        scheme_code = (data.scheme_code or "").strip() or derive_scheme_code(
            fund_name, at
        )

        with self.locks.hold(fund_key(scheme_code)):
            if self.session.get(Fund, scheme_code) is not None:
                raise DuplicateFund(f"Fund {scheme_code} already exists")
            fund = Fund(
                scheme_code=scheme_code,
                fund_name=fund_name,
                fund_house=(data.fund_house or "").strip() or None,
                category=category,
                nav_day=(data.nav_day or "").strip() or DEFAULT_NAV_DAY,
                start_date=at.date(),
                total_units_scaled=0,
            )
            fund.schedules.append(
                FundSchedule(scheme_code=scheme_code, year=at.year, amount_cents=amount_cents)
            )
            self.session.add(fund)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise DuplicateFund(f"Fund {scheme_code} already exists") from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise CommitFailure(f"Could not register fund {scheme_code}") from exc

        logger.info(f"fund_registered: scheme_code={scheme_code} name={fund_name!r}")
        return fund

    def set_schedule(self, scheme_code: str, year: int, amount: object) -> FundSchedule:
        amount_cents = parse_positive_cents(amount)
        with self.locks.hold(fund_key(scheme_code)):
            self.get(scheme_code)
            schedule = self.session.scalar(
                select(FundSchedule).where(
                    FundSchedule.scheme_code == scheme_code, FundSchedule.year == year
                )
            )
            if schedule is None:
                schedule = FundSchedule(scheme_code=scheme_code, year=year, amount_cents=0)
                self.session.add(schedule)
            schedule.amount_cents = amount_cents
            self._commit(f"schedule for {scheme_code}")
        logger.info(
            f"fund_schedule_set: scheme_code={scheme_code} year={year} "
            f"amount={amount_cents}"
        )
        return schedule

    def resolve_scheme_code(self, fund_name: str) -> str:
        name = (fund_name or "").strip()
        if not name:
            raise MissingField("Fund name is required")
        lowered = name.lower()
        try:
            exact = self.session.scalars(
                select(Fund).where(func.lower(Fund.fund_name) == lowered)
            ).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not read fund registry") from exc
        if len(exact) == 1:
            return exact[0].scheme_code
        if len(exact) > 1:
            codes = ", ".join(sorted(f.scheme_code for f in exact))
            raise AmbiguousFund(f"Fund '{name}' is ambiguous; matches: {codes}")

        best_distance: Optional[int] = None
        best: list[Fund] = []
        for fund in self.list_all():
            dist = int(Levenshtein.distance(lowered, fund.fund_name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [fund]
            elif dist == best_distance:
                best.append(fund)
        if best_distance is None or best_distance > 1:
            raise FundNotFound(f"Fund '{name}' not found")
        if len(best) > 1:
            options = ", ".join(sorted(f.fund_name for f in best))
            raise AmbiguousFund(f"Fund '{name}' is ambiguous; matches: {options}")
        return best[0].scheme_code

    def _upsert_nav(self, scheme_code: str, year: int, month: int, nav_micros: int) -> FundNav:
        nav = self.session.scalar(
            select(FundNav).where(
                FundNav.scheme_code == scheme_code,
                FundNav.year == year,
                FundNav.month == month,
            )
        )
        if nav is None:
            nav = FundNav(scheme_code=scheme_code, year=year, month=month)
            self.session.add(nav)
        nav.nav_micros = nav_micros
        return nav

    def apply_contribution(
        self,
        scheme_code: str,
        nav: object,
        *,
        at: Optional[datetime] = None,
    ) -> ContributionResult:
        if not self.user_id:
            raise MissingField("User id is required for a contribution")
        at = at or local_now()
        day = at.date()

        with self.locks.hold(fund_key(scheme_code)):
            fund = self.get(scheme_code)
            nav_micros = parse_nav_micros(nav)
            schedule = self.session.scalar(
                select(FundSchedule).where(
                    FundSchedule.scheme_code == scheme_code,
                    FundSchedule.year == day.year,
                )
            )
            if schedule is None or schedule.amount_cents <= 0:
                raise NoScheduledAmount(
                    f"Fund {scheme_code} has no contribution amount for {day.year}"
                )
            already = self.session.scalar(
                select(SipContribution.id).where(
                    SipContribution.scheme_code == scheme_code,
                    SipContribution.year == day.year,
                    SipContribution.month == day.month,
                )
            )
            if already is not None:
                raise ContributionAlreadyApplied(
                    f"Fund {scheme_code} already has a contribution for "
                    f"{day.year}-{day.month:02d}; use a NAV correction instead"
                )

            amount_cents = schedule.amount_cents
            units = units_for(amount_cents, nav_micros)
            units_scaled = units_to_scaled(units)
            new_total_scaled = fund.total_units_scaled + units_scaled
            sip_id = sip_transaction_id(day, scheme_code, at)
            expense_id = sip_expense_id(sip_id)

            try:
                fund.total_units_scaled = new_total_scaled
                self._upsert_nav(scheme_code, day.year, day.month, nav_micros)
                self.session.add(
                    SipContribution(
                        user_id=self.user_id,
                        scheme_code=scheme_code,
                        year=day.year,
                        month=day.month,
                        date=day,
                        amount_cents=amount_cents,
                        nav_micros=nav_micros,
                        units_scaled=units_scaled,
                        total_units_scaled=new_total_scaled,
                        transaction_id=sip_id,
                        expense_transaction_id=expense_id,
                    )
                )
                # The ledger commit carries the fund update with it.
                entry = LedgerService(
                    self.session, self.user_id, self.locks
                ).record_transaction(
                    TransactionIn(
                        amount=from_cents(amount_cents),
                        kind=TransactionKind.debit.value,
                        category=SIP_CATEGORY,
                        description=f"SIP - {fund.fund_name}",
                        payment_method=SIP_PAYMENT_METHOD,
                    ),
                    at=at,
                    txn_id=expense_id,
                    source=EntrySource.sip,
                )
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            f"sip_applied: scheme_code={scheme_code} user={self.user_id} "
            f"units={units} total_units_scaled={new_total_scaled} "
            f"txn_id={expense_id}"
        )
        return ContributionResult(
            scheme_code=scheme_code,
            units_purchased=units,
            new_total_units=units_from_scaled(new_total_scaled),
            amount_applied=from_cents(amount_cents),
            nav=from_micros(nav_micros),
            entry=entry,
        )

    def correct_nav(self, scheme_code: str, year: int, month: int, nav: object) -> FundNav:
        """Overwrite the recorded NAV for a month; units stay as purchased."""
        if not 1 <= month <= 12:
            raise InvalidNav(f"Invalid month: {month}")
        nav_micros = parse_nav_micros(nav)
        with self.locks.hold(fund_key(scheme_code)):
            self.get(scheme_code)
            row = self._upsert_nav(scheme_code, year, month, nav_micros)
            self._commit(f"NAV for {scheme_code}")
        logger.info(
            f"fund_nav_corrected: scheme_code={scheme_code} "
            f"period={year}-{month:02d} nav_micros={nav_micros}"
        )
        return row

    def holdings(self) -> list[HoldingOut]:
        result: list[HoldingOut] = []
        for fund in self.list_all():
            total_units = units_from_scaled(fund.total_units_scaled)
            latest = self.session.scalar(
                select(FundNav)
                .where(FundNav.scheme_code == fund.scheme_code)
                .order_by(FundNav.year.desc(), FundNav.month.desc())
                .limit(1)
            )
            latest_nav = from_micros(latest.nav_micros) if latest else None
            value = (
                (total_units * latest_nav).quantize(Decimal("0.01"))
                if latest_nav is not None
                else None
            )
            result.append(
                HoldingOut(
                    scheme_code=fund.scheme_code,
                    fund_name=fund.fund_name,
                    category=fund.category,
                    total_units=total_units,
                    latest_nav=latest_nav,
                    current_value=value,
                )
            )
        return result

    def contributions(self, year: Optional[int] = None) -> list[SipContribution]:
        if not self.user_id:
            raise MissingField("User id is required")
        stmt = select(SipContribution).where(SipContribution.user_id == self.user_id)
        if year is not None:
            stmt = stmt.where(SipContribution.year == year)
        try:
            return list(self.session.scalars(stmt.order_by(SipContribution.id)).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not read contributions") from exc
