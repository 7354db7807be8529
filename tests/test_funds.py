import threading
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    AmbiguousFund,
    BackdatedEntry,
    ContributionAlreadyApplied,
    DuplicateFund,
    DuplicateTransactionId,
    FundNotFound,
    InvalidAmount,
    InvalidNav,
    MissingField,
    NoScheduledAmount,
)
from identifiers import sip_expense_id, sip_transaction_id
from models import EntrySource, FundNav, LedgerEntry, SipContribution
from periods import LedgerPeriod
from schemas import FundIn, TransactionIn
from services import FundService, LedgerService


def make_session():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def alpha_fund(**overrides) -> FundIn:
    data = {
        "fund_name": "Alpha Fund",
        "category": "Equity",
        "contribution_amount": Decimal("1000"),
        "scheme_code": "ALPHA-123",
    }
    data.update(overrides)
    return FundIn(**data)


def register_alpha(session, user_id="alice"):
    service = FundService(session, user_id)
    service.register(alpha_fund(), at=datetime(2025, 1, 10, 9, 0))
    return service


def test_monthly_contributions_accumulate_units() -> None:
    session = make_session()
    service = register_alpha(session)

    january = service.apply_contribution(
        "ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9, 30)
    )
    assert january.units_purchased == Decimal("50.0000")
    assert january.new_total_units == Decimal("50.0000")

    february = service.apply_contribution(
        "ALPHA-123", Decimal("25"), at=datetime(2025, 2, 10, 9, 30)
    )
    assert february.units_purchased == Decimal("40.0000")
    assert february.new_total_units == Decimal("90.0000")
    assert february.amount_applied == Decimal("1000.00")

    entry = february.entry
    assert entry.category == "Investment"
    assert entry.amount_cents == 100_000
    assert entry.payment_method == "Auto"
    assert entry.description == "SIP - Alpha Fund"
    assert entry.source == EntrySource.sip
    assert entry.txn_id.endswith("-EXP")
    assert entry.txn_id.startswith("10-02-2025-ALPHA-123-")

    ledger = LedgerService(session, "alice")
    summary = ledger.balance_summary(today=date(2025, 2, 11))
    assert summary.balance == Decimal("-2000.00")
    assert summary.month_data.investments == Decimal("1000.00")
    assert ledger.verify().consistent

    fund = service.get("ALPHA-123")
    assert fund.total_units_scaled == 900_000
    navs = session.scalars(
        select(FundNav).where(FundNav.scheme_code == "ALPHA-123").order_by(FundNav.month)
    ).all()
    assert [(n.month, n.nav_micros) for n in navs] == [(1, 20_000_000), (2, 25_000_000)]


def test_units_are_rounded_to_four_places() -> None:
    session = make_session()
    service = register_alpha(session)
    result = service.apply_contribution(
        "ALPHA-123", Decimal("33.3"), at=datetime(2025, 1, 10, 9, 30)
    )
    assert result.units_purchased == Decimal("30.0300")


def test_register_rejects_duplicate_scheme_code() -> None:
    session = make_session()
    register_alpha(session)
    with pytest.raises(DuplicateFund):
        FundService(session, "alice").register(
            alpha_fund(fund_name="Other"), at=datetime(2025, 1, 11)
        )


def test_register_derives_scheme_code_and_defaults() -> None:
    session = make_session()
    service = FundService(session, "alice")
    fund = service.register(
        alpha_fund(scheme_code=None), at=datetime(2025, 1, 10, 9, 0, 0, 123000)
    )
    assert fund.scheme_code == "ALPHAF-123"
    assert fund.nav_day == "10"
    assert fund.start_date == date(2025, 1, 10)
    assert fund.total_units_scaled == 0
    assert [(s.year, s.amount_cents) for s in fund.schedules] == [(2025, 100_000)]


@pytest.mark.parametrize(
    "overrides,error",
    [
        ({"fund_name": "  "}, MissingField),
        ({"category": ""}, MissingField),
        ({"contribution_amount": Decimal("0")}, InvalidAmount),
        ({"contribution_amount": Decimal("-10")}, InvalidAmount),
    ],
)
def test_register_validates_input(overrides, error) -> None:
    session = make_session()
    with pytest.raises(error):
        FundService(session, "alice").register(
            alpha_fund(**overrides), at=datetime(2025, 1, 10)
        )
    assert FundService(session).list_all() == []


def test_contribution_to_unknown_fund_changes_nothing() -> None:
    session = make_session()
    register_alpha(session)
    with pytest.raises(FundNotFound):
        FundService(session, "alice").apply_contribution(
            "BETA-999", Decimal("20"), at=datetime(2025, 1, 10)
        )
    assert session.scalar(select(func.count(LedgerEntry.id))) == 0
    assert session.scalar(select(func.count(SipContribution.id))) == 0


@pytest.mark.parametrize("nav", [Decimal("0"), Decimal("-1"), "abc"])
def test_contribution_rejects_bad_nav(nav) -> None:
    session = make_session()
    service = register_alpha(session)
    with pytest.raises(InvalidNav):
        service.apply_contribution("ALPHA-123", nav, at=datetime(2025, 1, 10))
    assert service.get("ALPHA-123").total_units_scaled == 0
    assert session.scalar(select(func.count(LedgerEntry.id))) == 0


def test_contribution_needs_a_schedule_for_the_year() -> None:
    session = make_session()
    service = register_alpha(session)
    with pytest.raises(NoScheduledAmount):
        service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2026, 1, 10))

    service.set_schedule("ALPHA-123", 2026, Decimal("1500"))
    result = service.apply_contribution(
        "ALPHA-123", Decimal("30"), at=datetime(2026, 1, 10)
    )
    assert result.amount_applied == Decimal("1500.00")
    assert result.units_purchased == Decimal("50.0000")


def test_set_schedule_overwrites_existing_year() -> None:
    session = make_session()
    service = register_alpha(session)
    service.set_schedule("ALPHA-123", 2025, Decimal("2000"))
    result = service.apply_contribution(
        "ALPHA-123", Decimal("20"), at=datetime(2025, 3, 10)
    )
    assert result.amount_applied == Decimal("2000.00")
    with pytest.raises(FundNotFound):
        service.set_schedule("NOPE-000", 2025, Decimal("10"))


def test_second_contribution_in_same_month_is_rejected() -> None:
    session = make_session()
    service = register_alpha(session)
    service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9))

    with pytest.raises(ContributionAlreadyApplied):
        service.apply_contribution(
            "ALPHA-123", Decimal("22"), at=datetime(2025, 1, 20, 9)
        )

    assert service.get("ALPHA-123").total_units_scaled == 500_000
    assert session.scalar(select(func.count(LedgerEntry.id))) == 1


def test_correct_nav_keeps_units() -> None:
    session = make_session()
    service = register_alpha(session)
    service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9))

    row = service.correct_nav("ALPHA-123", 2025, 1, Decimal("21.5"))
    assert row.nav_micros == 21_500_000
    assert service.get("ALPHA-123").total_units_scaled == 500_000

    [holding] = service.holdings()
    assert holding.latest_nav == Decimal("21.5")
    assert holding.current_value == Decimal("1075.00")

    with pytest.raises(InvalidNav):
        service.correct_nav("ALPHA-123", 2025, 13, Decimal("20"))
    with pytest.raises(FundNotFound):
        service.correct_nav("NOPE-000", 2025, 1, Decimal("20"))


def test_total_units_never_decrease() -> None:
    session = make_session()
    service = register_alpha(session)
    totals = []
    for month, nav in enumerate(["20", "18.75", "25", "40.1", "19.99"], start=1):
        result = service.apply_contribution(
            "ALPHA-123", Decimal(nav), at=datetime(2025, month, 10, 9)
        )
        totals.append(result.new_total_units)
    assert totals == sorted(totals)
    assert len(set(totals)) == len(totals)

    rows = service.contributions()
    assert sum(r.units_scaled for r in rows) == service.get("ALPHA-123").total_units_scaled


def test_failed_ledger_write_rolls_back_fund_changes() -> None:
    session = make_session()
    service = register_alpha(session)
    at = datetime(2025, 1, 10, 9, 30)
    clash = sip_expense_id(sip_transaction_id(at.date(), "ALPHA-123", at))
    LedgerService(session, "alice").record_transaction(
        TransactionIn(amount=Decimal("5"), kind="credit"),
        at=datetime(2025, 1, 9),
        txn_id=clash,
    )

    with pytest.raises(DuplicateTransactionId):
        service.apply_contribution("ALPHA-123", Decimal("20"), at=at)

    assert service.get("ALPHA-123").total_units_scaled == 0
    assert session.scalar(select(func.count(SipContribution.id))) == 0
    assert session.scalar(select(func.count(FundNav.id))) == 0
    log = LedgerService(session, "alice").period_log(LedgerPeriod(2025, 1))
    assert [e.txn_id for e in log] == [clash]


def test_resolve_scheme_code_by_name() -> None:
    session = make_session()
    service = register_alpha(session)
    service.register(
        alpha_fund(fund_name="Beta Bond", scheme_code="BETA-001"),
        at=datetime(2025, 1, 10),
    )

    assert service.resolve_scheme_code("alpha fund") == "ALPHA-123"
    assert service.resolve_scheme_code("Alpha Fnd") == "ALPHA-123"
    with pytest.raises(FundNotFound):
        service.resolve_scheme_code("Gamma Growth")
    with pytest.raises(MissingField):
        service.resolve_scheme_code("  ")


def test_resolve_scheme_code_reports_ambiguity() -> None:
    session = make_session()
    service = register_alpha(session)
    service.register(
        alpha_fund(scheme_code="ALPHA-456"), at=datetime(2025, 1, 10)
    )
    with pytest.raises(AmbiguousFund):
        service.resolve_scheme_code("Alpha Fund")

    service.register(
        alpha_fund(fund_name="Fund A", scheme_code="FA-1"), at=datetime(2025, 1, 10)
    )
    service.register(
        alpha_fund(fund_name="Fund C", scheme_code="FC-1"), at=datetime(2025, 1, 10)
    )
    with pytest.raises(AmbiguousFund):
        service.resolve_scheme_code("Fund B")


def test_holdings_value_at_latest_nav() -> None:
    session = make_session()
    service = register_alpha(session)
    service.register(
        alpha_fund(fund_name="Beta Bond", scheme_code="BETA-001"),
        at=datetime(2025, 1, 10),
    )
    service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9))
    service.apply_contribution("ALPHA-123", Decimal("25"), at=datetime(2025, 2, 10, 9))

    holdings = {h.scheme_code: h for h in service.holdings()}
    alpha = holdings["ALPHA-123"]
    assert alpha.total_units == Decimal("90.0000")
    assert alpha.latest_nav == Decimal("25")
    assert alpha.current_value == Decimal("2250.00")
    beta = holdings["BETA-001"]
    assert beta.total_units == Decimal("0.0000")
    assert beta.latest_nav is None
    assert beta.current_value is None


def test_contributions_are_listed_per_user_and_year() -> None:
    session = make_session()
    service = register_alpha(session)
    service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9))
    service.set_schedule("ALPHA-123", 2026, Decimal("1000"))
    service.apply_contribution("ALPHA-123", Decimal("25"), at=datetime(2026, 1, 10, 9))

    assert len(service.contributions()) == 2
    [row] = service.contributions(2026)
    assert row.units_scaled == 400_000
    assert row.total_units_scaled == 900_000
    assert row.expense_transaction_id == f"{row.transaction_id}-EXP"
    assert FundService(session, "bob").contributions() == []
    with pytest.raises(MissingField):
        FundService(session).contributions()


def test_contribution_requires_a_user() -> None:
    session = make_session()
    register_alpha(session)
    with pytest.raises(MissingField):
        FundService(session).apply_contribution(
            "ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10)
        )


def test_contribution_bounds_on_nav_and_amount() -> None:
    session = make_session()
    service = register_alpha(session)
    with pytest.raises(InvalidNav):
        service.apply_contribution(
            "ALPHA-123", Decimal("1e12"), at=datetime(2025, 1, 10)
        )
    with pytest.raises(InvalidAmount):
        service.register(
            alpha_fund(scheme_code="HUGE-1", contribution_amount=Decimal("1e20")),
            at=datetime(2025, 1, 10),
        )
    with pytest.raises(InvalidAmount):
        service.set_schedule("ALPHA-123", 2026, Decimal("1e20"))
    assert service.get("ALPHA-123").total_units_scaled == 0


def test_contribution_into_closed_period_leaves_fund_untouched() -> None:
    session = make_session()
    service = register_alpha(session)
    LedgerService(session, "alice").record_transaction(
        TransactionIn(amount=Decimal("5000"), kind="credit"),
        at=datetime(2025, 2, 1, 9),
    )

    with pytest.raises(BackdatedEntry):
        service.apply_contribution("ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10))

    assert service.get("ALPHA-123").total_units_scaled == 0
    assert service.contributions() == []
    assert session.scalar(select(func.count(FundNav.id))) == 0


def test_fund_holds_one_contribution_per_month_across_users() -> None:
    session = make_session()
    register_alpha(session)
    FundService(session, "alice").apply_contribution(
        "ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9)
    )

    with pytest.raises(ContributionAlreadyApplied):
        FundService(session, "bob").apply_contribution(
            "ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 10)
        )
    assert LedgerService(session, "bob").period_log(LedgerPeriod(2025, 1)) == []


def file_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'funds.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def run_threads(targets) -> None:
    threads = [threading.Thread(target=target) for target in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_concurrent_contributions_apply_once(tmp_path) -> None:
    SessionLocal = file_sessions(tmp_path)
    with SessionLocal() as session:
        register_alpha(session, "uma")

    applied = []
    rejected = []
    failures: list[BaseException] = []

    def worker() -> None:
        session = SessionLocal()
        try:
            result = FundService(session, "uma").apply_contribution(
                "ALPHA-123", Decimal("20"), at=datetime(2025, 1, 10, 9)
            )
            applied.append(result)
        except ContributionAlreadyApplied as exc:
            rejected.append(exc)
        except BaseException as exc:  # surfaced below
            failures.append(exc)
        finally:
            session.close()

    run_threads([worker] * 6)

    assert failures == []
    assert len(applied) == 1
    assert len(rejected) == 5
    with SessionLocal() as session:
        service = FundService(session, "uma")
        assert service.get("ALPHA-123").total_units_scaled == 500_000
        assert len(service.contributions()) == 1
        ledger = LedgerService(session, "uma")
        assert len(ledger.period_log(LedgerPeriod(2025, 1))) == 1
        assert ledger.verify().consistent


def test_contributions_interleaved_with_manual_records(tmp_path) -> None:
    SessionLocal = file_sessions(tmp_path)
    codes = ["ALPHA-123", "BETA-456", "GAMMA-789"]
    with SessionLocal() as session:
        service = FundService(session, "vera")
        for code in codes:
            service.register(
                alpha_fund(fund_name=f"Fund {code}", scheme_code=code),
                at=datetime(2025, 1, 2),
            )

    failures: list[BaseException] = []

    def contribute(code):
        def worker() -> None:
            session = SessionLocal()
            try:
                FundService(session, "vera").apply_contribution(
                    code, Decimal("25"), at=datetime(2025, 1, 10, 9)
                )
            except BaseException as exc:  # surfaced below
                failures.append(exc)
            finally:
                session.close()

        return worker

    def record() -> None:
        session = SessionLocal()
        try:
            ledger = LedgerService(session, "vera")
            for _ in range(10):
                ledger.record_transaction(
                    TransactionIn(amount=Decimal("5"), kind="credit", category="income"),
                    at=datetime(2025, 1, 10, 9),
                )
        except BaseException as exc:  # surfaced below
            failures.append(exc)
        finally:
            session.close()

    run_threads([contribute(code) for code in codes] + [record, record])

    assert failures == []
    with SessionLocal() as session:
        ledger = LedgerService(session, "vera")
        entries = ledger.period_log(LedgerPeriod(2025, 1))
        assert len(entries) == 23
        assert len({e.txn_id for e in entries}) == 23
        assert entries[-1].balance_after_cents == 10_000 - 3 * 100_000
        assert ledger.verify().consistent
        month = ledger.balance_summary(today=date(2025, 1, 10)).month_data
        assert month.investments == Decimal("3000.00")
        assert month.income == Decimal("100.00")
        holdings = FundService(session, "vera").holdings()
        assert [h.total_units for h in holdings] == [Decimal("40.0000")] * 3
