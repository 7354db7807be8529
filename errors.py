"""Error kinds raised by the ledger core.

Caller faults (validation, not found, conflict) are never worth retrying.
``StoreError`` subclasses signal I/O trouble; nothing was committed when one
is raised, so the same request can be retried. A retry after a *successful*
commit appends a second entry unless the caller reuses the same transaction
id, which the store rejects with ``DuplicateTransactionId``.
"""


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    pass


class InvalidAmount(ValidationError):
    pass


class InvalidKind(ValidationError):
    pass


class InvalidNav(ValidationError):
    pass


class MissingField(ValidationError):
    pass


class NoScheduledAmount(ValidationError):
    pass


class AmbiguousFund(ValidationError):
    pass


class BackdatedEntry(ValidationError):
    pass


class NotFoundError(LedgerError, LookupError):
    pass


class FundNotFound(NotFoundError):
    pass


class ConflictError(LedgerError):
    pass


class DuplicateFund(ConflictError):
    pass


class ContributionAlreadyApplied(ConflictError):
    pass


class DuplicateTransactionId(ConflictError):
    pass


class StoreError(LedgerError):
    pass


class StoreUnavailable(StoreError):
    pass


class CommitFailure(StoreError):
    pass
