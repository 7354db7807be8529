import re
from datetime import date, datetime

from errors import MissingField


SCHEME_PREFIX_LENGTH = 6
SIP_EXPENSE_SUFFIX = "-EXP"


def transaction_id(on: date, category: str, sequence: int) -> str:
    """Deterministic id for a manually recorded transaction.

    Identical inputs yield the same id, so the caller advances ``sequence``
    only after a successful commit.
    """
    if sequence < 0:
        raise ValueError("Sequence must not be negative")
    prefix = (category or "")[:3].upper()
    return f"{on.year}{on:%d%m%Y}-{prefix}-{sequence:04d}"


def _epoch_millis(at: datetime) -> int:
    whole = at.replace(microsecond=0)
    return int(whole.timestamp()) * 1000 + at.microsecond // 1000


def sip_transaction_id(on: date, scheme_code: str, at: datetime) -> str:
    return f"{on:%d-%m-%Y}-{scheme_code}-{_epoch_millis(at)}"


def sip_expense_id(sip_id: str) -> str:
    return f"{sip_id}{SIP_EXPENSE_SUFFIX}"


def derive_scheme_code(fund_name: str, at: datetime) -> str:
    letters = re.sub(r"[^A-Za-z]", "", fund_name or "")
    if not letters:
        raise MissingField("Fund name must contain letters to derive a scheme code")
    token = str(_epoch_millis(at))[-3:]
    return f"{letters[:SCHEME_PREFIX_LENGTH].upper()}-{token}"
