"""Import a fund registry kept in the older ``exp-sip.json`` layout.

The file looks like::

    {"info": {"<scheme code>": {"scheme_code": ..., "fund_name": ...,
      "scheme_category": ..., "fund_house": ..., "nav_day": "10",
      "start_date": "20250110", "total_units": 12.3456,
      "amount": {"2025": {"amount": 1000}},
      "nav": {"2025": {"1": 45.12, "2": 46.0}}}}}

Funds whose scheme code already exists are reported and left untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import CommitFailure, DuplicateFund, ValidationError
from models import Fund, FundNav, FundSchedule
from money import MAX_UNITS_SCALED, UNITS_SCALE, to_decimal, units_to_scaled
from services import parse_nav_micros, parse_positive_cents


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyFundRow:
    scheme_code: str
    fund_name: str
    category: str
    fund_house: Optional[str]
    nav_day: str
    start_date: date
    total_units_scaled: int
    schedule_cents: dict[int, int]
    nav_micros: dict[tuple[int, int], int]


@dataclass
class LegacyRegistryPreview:
    funds: list[LegacyFundRow] = field(default_factory=list)
    existing_codes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _parse_start_date(value: Any, fallback: date) -> date:
    raw = str(value or "").strip()
    if not raw:
        return fallback
    for fmt in ("%Y%m%d", "%d-%m-%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f"Invalid legacy start date: {raw}")


def _parse_fund(code: str, raw: dict[str, Any], today: date) -> LegacyFundRow:
    scheme_code = str(raw.get("scheme_code") or code).strip()
    fund_name = str(raw.get("fund_name") or "").strip()
    category = str(raw.get("scheme_category") or "").strip()
    if not scheme_code or not fund_name or not category:
        raise ValidationError(f"Legacy fund {code!r} is missing required fields")

    schedule: dict[int, int] = {}
    for year, entry in (raw.get("amount") or {}).items():
        amount = entry.get("amount") if isinstance(entry, dict) else entry
        schedule[int(year)] = parse_positive_cents(amount)

    navs: dict[tuple[int, int], int] = {}
    for year, months in (raw.get("nav") or {}).items():
        for month, nav in (months or {}).items():
            if not 1 <= int(month) <= 12:
                raise ValidationError(f"Legacy fund {code!r} has NAV for month {month}")
            navs[(int(year), int(month))] = parse_nav_micros(nav)

    try:
        total_units = to_decimal(raw.get("total_units") or 0)
    except ValueError as exc:
        raise ValidationError(f"Legacy fund {code!r} has invalid total_units") from exc
    if not total_units.is_finite() or total_units < 0:
        raise ValidationError(f"Legacy fund {code!r} has invalid total_units")
    if total_units * UNITS_SCALE > MAX_UNITS_SCALED:
        raise ValidationError(f"Legacy fund {code!r} has too many units")

    return LegacyFundRow(
        scheme_code=scheme_code,
        fund_name=fund_name,
        category=category,
        fund_house=(str(raw.get("fund_house") or "").strip() or None),
        nav_day=str(raw.get("nav_day") or "10").strip(),
        start_date=_parse_start_date(raw.get("start_date"), today),
        total_units_scaled=units_to_scaled(Decimal(total_units)),
        schedule_cents=schedule,
        nav_micros=navs,
    )


class LegacyRegistryImportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def preview(self, payload: dict[str, Any], *, today: Optional[date] = None) -> LegacyRegistryPreview:
        info = payload.get("info")
        if not isinstance(info, dict):
            raise ValidationError("Legacy registry must contain an 'info' object")
        today = today or date.today()
        preview = LegacyRegistryPreview()
        existing = set(self.session.scalars(select(Fund.scheme_code)).all())
        seen: set[str] = set()
        for code, raw in info.items():
            if not isinstance(raw, dict):
                preview.warnings.append(f"Skipping {code!r}: not an object")
                continue
            try:
                row = _parse_fund(str(code), raw, today)
            except ValidationError:
                raise
            except (TypeError, ValueError, ArithmeticError) as exc:
                raise ValidationError(f"Legacy fund {code!r} is malformed: {exc}") from exc
            if row.scheme_code in seen:
                raise DuplicateFund(
                    f"Legacy registry lists {row.scheme_code} more than once"
                )
            seen.add(row.scheme_code)
            if row.scheme_code in existing:
                preview.existing_codes.append(row.scheme_code)
                continue
            if not row.schedule_cents:
                preview.warnings.append(
                    f"{row.scheme_code} has no contribution schedule"
                )
            preview.funds.append(row)
        return preview

    def commit(self, payload: dict[str, Any], *, today: Optional[date] = None) -> LegacyRegistryPreview:
        preview = self.preview(payload, today=today)
        try:
            for row in preview.funds:
                fund = Fund(
                    scheme_code=row.scheme_code,
                    fund_name=row.fund_name,
                    fund_house=row.fund_house,
                    category=row.category,
                    nav_day=row.nav_day,
                    start_date=row.start_date,
                    total_units_scaled=row.total_units_scaled,
                )
                for year, cents in sorted(row.schedule_cents.items()):
                    fund.schedules.append(
                        FundSchedule(scheme_code=row.scheme_code, year=year, amount_cents=cents)
                    )
                for (year, month), micros in sorted(row.nav_micros.items()):
                    fund.navs.append(
                        FundNav(
                            scheme_code=row.scheme_code,
                            year=year,
                            month=month,
                            nav_micros=micros,
                        )
                    )
                self.session.add(fund)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise CommitFailure("Could not import legacy fund registry") from exc

        logger.info(
            f"legacy_registry_import: imported={len(preview.funds)} "
            f"skipped={len(preview.existing_codes)} warnings={len(preview.warnings)}"
        )
        return preview

