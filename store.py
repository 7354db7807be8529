"""Durable per-user ledger storage.

The account row is the single source of truth for a user's current balance;
``ledger_entries`` is the append-only history partitioned by (year, month) and
``category_totals`` holds the incrementally maintained bucket sums. A commit
writes all three in one database transaction, and ``replay`` recomputes the
derived state from the history when it needs checking or repairing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import CommitFailure, DuplicateTransactionId, StoreUnavailable
from models import Account, Bucket, CategoryTotal, LedgerEntry
from periods import LedgerPeriod


logger = logging.getLogger(__name__)


def empty_totals() -> dict[Bucket, int]:
    return {bucket: 0 for bucket in Bucket}


@dataclass
class AccountSnapshot:
    user_id: str
    period: LedgerPeriod
    balance_cents: int = 0
    savings_cents: int = 0
    # 0 means nothing has been committed for this user yet.
    version: int = 0
    totals: dict[Bucket, int] = field(default_factory=empty_totals)


@dataclass
class ReplayResult:
    user_id: str
    entries: int
    balance_cents: int
    savings_cents: int
    totals: dict[LedgerPeriod, dict[Bucket, int]]
    snapshot_balance_cents: int
    snapshot_savings_cents: int
    recorded_totals: dict[LedgerPeriod, dict[Bucket, int]]
    continuity_breaks: list[str] = field(default_factory=list)

    def totals_mismatches(self) -> list[tuple[LedgerPeriod, Bucket, int, int]]:
        mismatches = []
        for period in sorted(set(self.totals) | set(self.recorded_totals)):
            replayed = self.totals.get(period, empty_totals())
            recorded = self.recorded_totals.get(period, empty_totals())
            for bucket in Bucket:
                if recorded[bucket] != replayed[bucket]:
                    mismatches.append(
                        (period, bucket, recorded[bucket], replayed[bucket])
                    )
        return mismatches

    @property
    def consistent(self) -> bool:
        return (
            not self.continuity_breaks
            and self.balance_cents == self.snapshot_balance_cents
            and self.savings_cents == self.snapshot_savings_cents
            and not self.totals_mismatches()
        )


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _account(self, user_id: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account)
            .where(Account.user_id == user_id)
            .execution_options(populate_existing=True)
        )

    def _totals_row(self, user_id: str, period: LedgerPeriod) -> Optional[CategoryTotal]:
        return self.session.scalar(
            select(CategoryTotal)
            .where(
                CategoryTotal.user_id == user_id,
                CategoryTotal.year == period.year,
                CategoryTotal.month == period.month,
            )
            .execution_options(populate_existing=True)
        )

    def load_snapshot(self, user_id: str, period: LedgerPeriod) -> AccountSnapshot:
        try:
            account = self._account(user_id)
            totals_row = self._totals_row(user_id, period)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not load snapshot for {user_id}") from exc

        snapshot = AccountSnapshot(user_id=user_id, period=period)
        if account:
            snapshot.balance_cents = account.balance_cents
            snapshot.savings_cents = account.savings_cents
            snapshot.version = account.version
        if totals_row:
            snapshot.totals = {
                bucket: totals_row.get_bucket(bucket) for bucket in Bucket
            }
        return snapshot

    def load_period_log(self, user_id: str, period: LedgerPeriod) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.year == period.year,
                LedgerEntry.month == period.month,
            )
            .order_by(LedgerEntry.id)
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StoreUnavailable(
                f"Could not load {period.slug} log for {user_id}"
            ) from exc

    def last_entry(self, user_id: str, period: LedgerPeriod) -> Optional[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.year == period.year,
                LedgerEntry.month == period.month,
            )
            .order_by(LedgerEntry.id.desc())
            .limit(1)
        )
        try:
            return self.session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read ledger for {user_id}") from exc

    def newest_entry(self, user_id: str) -> Optional[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id.desc())
            .limit(1)
        )
        try:
            return self.session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read ledger for {user_id}") from exc

    def count_for_day(self, user_id: str, day: date) -> int:
        stmt = select(func.count(LedgerEntry.id)).where(
            LedgerEntry.user_id == user_id, LedgerEntry.date == day
        )
        try:
            return int(self.session.execute(stmt).scalar_one() or 0)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read ledger for {user_id}") from exc

    def _id_taken(self, user_id: str, txn_id: str) -> bool:
        stmt = select(func.count(LedgerEntry.id)).where(
            LedgerEntry.user_id == user_id, LedgerEntry.txn_id == txn_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def entry_exists(self, user_id: str, txn_id: str) -> bool:
        try:
            return self._id_taken(user_id, txn_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read ledger for {user_id}") from exc

    def append_and_commit(
        self,
        user_id: str,
        period: LedgerPeriod,
        entry: LedgerEntry,
        snapshot: AccountSnapshot,
    ) -> None:
        if entry.user_id != user_id or (entry.year, entry.month) != (
            period.year,
            period.month,
        ):
            raise ValueError("Entry does not belong to the given user and period")
        try:
            if self._id_taken(user_id, entry.txn_id):
                raise DuplicateTransactionId(
                    f"Transaction {entry.txn_id} already recorded for {user_id}"
                )

            account = self._account(user_id)
            if account is None:
                if snapshot.version != 0:
                    raise CommitFailure(f"Account for {user_id} disappeared")
                account = Account(user_id=user_id)
                self.session.add(account)
            elif account.version != snapshot.version:
                raise CommitFailure(
                    f"Snapshot for {user_id} is stale: "
                    f"version={snapshot.version} stored={account.version}"
                )
            account.balance_cents = snapshot.balance_cents
            account.savings_cents = snapshot.savings_cents

            totals_row = self._totals_row(user_id, period)
            if totals_row is None:
                totals_row = CategoryTotal(
                    user_id=user_id, year=period.year, month=period.month
                )
                self.session.add(totals_row)
            for bucket in Bucket:
                totals_row.set_bucket(bucket, snapshot.totals.get(bucket, 0))

            self.session.add(entry)
            self.session.commit()
        except (DuplicateTransactionId, CommitFailure):
            self.session.rollback()
            raise
        except IntegrityError as exc:
            self.session.rollback()
            if self.entry_exists(user_id, entry.txn_id):
                raise DuplicateTransactionId(
                    f"Transaction {entry.txn_id} already recorded for {user_id}"
                ) from exc
            logger.warning(f"ledger_commit_failed: user={user_id} error={exc}")
            raise CommitFailure(f"Could not commit {entry.txn_id}") from exc
        except StaleDataError as exc:
            self.session.rollback()
            logger.warning(f"ledger_commit_stale: user={user_id}")
            raise CommitFailure(f"Snapshot for {user_id} changed underneath") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(f"ledger_commit_failed: user={user_id} error={exc}")
            raise CommitFailure(f"Could not commit {entry.txn_id}") from exc
        except Exception as exc:
            # Driver errors raised while binding parameters (OverflowError and
            # the like) bypass SQLAlchemy's wrapping.
            self.session.rollback()
            logger.warning(f"ledger_commit_failed: user={user_id} error={exc!r}")
            raise CommitFailure(f"Could not commit {entry.txn_id}") from exc

        snapshot.version = account.version
        logger.info(
            f"ledger_commit: user={user_id} txn_id={entry.txn_id} "
            f"period={period.slug} balance_after={entry.balance_after_cents}"
        )

    def replay(self, user_id: str) -> ReplayResult:
        try:
            entries = self.session.scalars(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.id)
            ).all()
            account = self._account(user_id)
            rows = self.session.scalars(
                select(CategoryTotal).where(CategoryTotal.user_id == user_id)
            ).all()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not replay ledger for {user_id}") from exc

        balance = 0
        savings = 0
        previous_after = 0
        breaks: list[str] = []
        totals: dict[LedgerPeriod, dict[Bucket, int]] = {}
        for entry in entries:
            expected = previous_after + entry.signed_cents
            if entry.balance_after_cents != expected:
                breaks.append(
                    f"{entry.txn_id}: expected {expected} "
                    f"recorded {entry.balance_after_cents}"
                )
            previous_after = entry.balance_after_cents
            balance += entry.signed_cents
            period = LedgerPeriod(entry.year, entry.month)
            totals.setdefault(period, empty_totals())[entry.bucket] += (
                entry.amount_cents
            )
            if entry.bucket == Bucket.savings:
                savings += entry.amount_cents

        recorded = {
            LedgerPeriod(row.year, row.month): {
                bucket: row.get_bucket(bucket) for bucket in Bucket
            }
            for row in rows
        }
        return ReplayResult(
            user_id=user_id,
            entries=len(entries),
            balance_cents=balance,
            savings_cents=savings,
            totals=totals,
            snapshot_balance_cents=account.balance_cents if account else 0,
            snapshot_savings_cents=account.savings_cents if account else 0,
            recorded_totals=recorded,
            continuity_breaks=breaks,
        )

    def rebuild(self, user_id: str) -> ReplayResult:
        replayed = self.replay(user_id)
        try:
            self.session.execute(
                delete(CategoryTotal).where(CategoryTotal.user_id == user_id)
            )
            for period, totals in replayed.totals.items():
                row = CategoryTotal(user_id=user_id, year=period.year, month=period.month)
                for bucket, cents in totals.items():
                    row.set_bucket(bucket, cents)
                self.session.add(row)

            account = self._account(user_id)
            if account is None and replayed.entries:
                account = Account(user_id=user_id)
                self.session.add(account)
            if account is not None:
                account.balance_cents = replayed.balance_cents
                account.savings_cents = replayed.savings_cents
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise CommitFailure(f"Could not rebuild snapshot for {user_id}") from exc

        logger.info(
            f"ledger_rebuild: user={user_id} entries={replayed.entries} "
            f"balance={replayed.balance_cents}"
        )
        return self.replay(user_id)
