import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

import errors
from config import get_settings
from csv_utils import export_contributions, export_entries
from database import SessionLocal
from legacy_import import LegacyRegistryImportService
from periods import LedgerPeriod, resolve_period
from schemas import (
    BalanceSummaryOut,
    ContributionIn,
    ContributionOut,
    FundIn,
    FundOut,
    HoldingOut,
    MonthTotalsOut,
    NavCorrectionIn,
    PeriodTotalsDiff,
    RecordOut,
    ReplayReportOut,
    ScheduleIn,
    SipEntryOut,
    TransactionIn,
)
from money import from_cents
from services import FundService, LedgerService
from store import ReplayResult


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

_STATUS_BY_ERROR: list[tuple[type[errors.LedgerError], int]] = [
    (errors.ValidationError, 400),
    (errors.NotFoundError, 404),
    (errors.ConflictError, 409),
    (errors.StoreUnavailable, 503),
    (errors.CommitFailure, 500),
]


@app.exception_handler(errors.LedgerError)
async def ledger_error_handler(request: Request, exc: errors.LedgerError):
    status = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc!r}")
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Set by the authenticating proxy in front of this service.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id.strip()


def period_from_param(period: Optional[str]) -> LedgerPeriod:
    try:
        return resolve_period(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _replay_report(result: ReplayResult) -> ReplayReportOut:
    return ReplayReportOut(
        user_id=result.user_id,
        entries=result.entries,
        balance=from_cents(result.balance_cents),
        snapshot_balance=from_cents(result.snapshot_balance_cents),
        savings=from_cents(result.savings_cents),
        snapshot_savings=from_cents(result.snapshot_savings_cents),
        continuity_breaks=result.continuity_breaks,
        totals_mismatches=[
            PeriodTotalsDiff(
                year=period.year,
                month=period.month,
                bucket=bucket.value,
                recorded=from_cents(recorded),
                replayed=from_cents(replayed),
            )
            for period, bucket, recorded, replayed in result.totals_mismatches()
        ],
        consistent=result.consistent,
    )


@app.post("/records", response_model=RecordOut, status_code=201)
def add_record(
    data: TransactionIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    entry = LedgerService(db, user_id).record_transaction(data)
    return RecordOut.from_entry(entry)


@app.get("/records", response_model=list[RecordOut])
def list_records(
    period: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    entries = LedgerService(db, user_id).period_log(period_from_param(period))
    return [RecordOut.from_entry(entry) for entry in entries]


@app.get("/records/export")
def export_records(
    period: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    ledger_period = period_from_param(period)
    entries = LedgerService(db, user_id).period_log(ledger_period)
    filename = f"transactions-{user_id}-{ledger_period.slug}.csv"
    return Response(
        content=export_entries(entries),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/balance", response_model=BalanceSummaryOut)
def get_balance(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return LedgerService(db, user_id).balance_summary()


@app.get("/totals/{year}", response_model=list[MonthTotalsOut])
def get_totals(
    year: int,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return LedgerService(db, user_id).monthly_totals(year)


@app.post("/ledger/verify", response_model=ReplayReportOut)
def verify_ledger(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return _replay_report(LedgerService(db, user_id).verify())


@app.post("/ledger/rebuild", response_model=ReplayReportOut)
def rebuild_ledger(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return _replay_report(LedgerService(db, user_id).rebuild())


@app.post("/funds", response_model=FundOut, status_code=201)
def add_fund(
    data: FundIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    fund = FundService(db, user_id).register(data)
    return FundOut.from_fund(fund)


@app.get("/funds", response_model=list[HoldingOut])
def list_holdings(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return FundService(db, user_id).holdings()


@app.get("/funds/{scheme_code}", response_model=FundOut)
def get_fund(
    scheme_code: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    return FundOut.from_fund(FundService(db, user_id).get(scheme_code))


@app.put("/funds/{scheme_code}/schedule/{year}", response_model=FundOut)
def set_fund_schedule(
    scheme_code: str,
    year: int,
    data: ScheduleIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    service = FundService(db, user_id)
    service.set_schedule(scheme_code, year, data.amount)
    return FundOut.from_fund(service.get(scheme_code))


@app.put("/funds/{scheme_code}/nav/{year}/{month}", response_model=FundOut)
def correct_fund_nav(
    scheme_code: str,
    year: int,
    month: int,
    data: NavCorrectionIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    service = FundService(db, user_id)
    service.correct_nav(scheme_code, year, month, data.nav)
    return FundOut.from_fund(service.get(scheme_code))


@app.post("/funds/import")
def import_funds(
    payload: dict[str, Any],
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    preview = LegacyRegistryImportService(db).commit(payload)
    return {
        "imported": [row.scheme_code for row in preview.funds],
        "skipped": preview.existing_codes,
        "warnings": preview.warnings,
    }


@app.post("/sip", response_model=ContributionOut)
def add_sip(
    data: ContributionIn,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    service = FundService(db, user_id)
    scheme_code = (data.scheme_code or "").strip()
    if not scheme_code:
        if not data.fund_name:
            raise errors.MissingField("Either scheme_code or fund_name is required")
        scheme_code = service.resolve_scheme_code(data.fund_name)
    result = service.apply_contribution(scheme_code, data.nav)
    return ContributionOut(
        scheme_code=result.scheme_code,
        units_purchased=result.units_purchased,
        new_total_units=result.new_total_units,
        amount_applied=result.amount_applied,
        nav=result.nav,
        record=RecordOut.from_entry(result.entry),
    )


@app.get("/sip", response_model=list[SipEntryOut])
def list_sip(
    year: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rows = FundService(db, user_id).contributions(year)
    return [SipEntryOut.from_contribution(row) for row in rows]


@app.get("/sip/export")
def export_sip(
    year: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    rows = FundService(db, user_id).contributions(year)
    suffix = f"-{year}" if year is not None else ""
    return Response(
        content=export_contributions(rows, delimiter="\t"),
        media_type="text/tab-separated-values",
        headers={
            "Content-Disposition": f'attachment; filename="sip-{user_id}{suffix}.tsv"'
        },
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
