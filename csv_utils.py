import csv
import re
from io import StringIO
from typing import Sequence

from models import LedgerEntry, SipContribution
from money import from_cents, from_micros, units_from_scaled


LEDGER_COLUMNS = [
    "Date",
    "Category",
    "Description",
    "Payment method",
    "Amount",
    "Type",
    "Balance after",
    "Notes",
    "Transaction ID",
    "Loan ID",
    "Is Pocketmoney Transaction",
]

SIP_COLUMNS = [
    "Date",
    "Fund Name",
    "Scheme Code",
    "Category",
    "Amount",
    "Units Purchased",
    "Total Units",
    "NAV",
    "Transaction ID",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def export_entries(entries: Sequence[LedgerEntry], *, delimiter: str = ",") -> str:
    output = StringIO()
    writer = csv.writer(output, delimiter=delimiter, lineterminator="\n")
    writer.writerow(LEDGER_COLUMNS)
    for entry in entries:
        writer.writerow(
            [
                entry.date.strftime("%d-%m-%Y"),
                sanitize_csv_value(entry.category),
                sanitize_csv_value(entry.description or ""),
                sanitize_csv_value(entry.payment_method or ""),
                f"{from_cents(entry.amount_cents)}",
                entry.kind.value,
                f"{from_cents(entry.balance_after_cents)}",
                sanitize_csv_value(entry.notes or ""),
                entry.txn_id,
                sanitize_csv_value(entry.loan_id or ""),
                "true" if entry.is_pocket_money else "false",
            ]
        )
    return output.getvalue()


def export_contributions(
    rows: Sequence[SipContribution], *, delimiter: str = ","
) -> str:
    output = StringIO()
    writer = csv.writer(output, delimiter=delimiter, lineterminator="\n")
    writer.writerow(SIP_COLUMNS)
    for row in rows:
        writer.writerow(
            [
                row.date.strftime("%d-%m-%Y"),
                sanitize_csv_value(row.fund.fund_name),
                row.scheme_code,
                sanitize_csv_value(row.fund.category),
                f"{from_cents(row.amount_cents)}",
                f"{units_from_scaled(row.units_scaled)}",
                f"{units_from_scaled(row.total_units_scaled)}",
                f"{from_micros(row.nav_micros)}",
                row.transaction_id,
            ]
        )
    return output.getvalue()
