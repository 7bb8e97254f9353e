"""
Typed outcomes surfaced by the ledger engine.

Title parse rejections and per-doctor calendar failures are not errors;
they are reported inside ``SyncResult``.
"""
from __future__ import annotations

from typing import Iterable, Optional


class LedgerError(Exception):
    """Base class for every error the engine raises on purpose."""


class InvalidIdentity(LedgerError):
    def __init__(self, message: str = "Patient name must not be blank"):
        super().__init__(message)


class LockViolation(LedgerError):
    def __init__(self, clinic_id: str, date: str, fields: Iterable[str] = ()):
        self.clinic_id = clinic_id
        self.date = date
        self.fields = sorted(fields)
        detail = f" (fields: {', '.join(self.fields)})" if self.fields else ""
        super().__init__(f"Ledger {clinic_id} {date} is locked{detail}")


class PermissionDenied(LedgerError):
    pass


class PaymentBreakdownMismatch(LedgerError, ValueError):
    def __init__(self, row_id: str, breakdown_total: float, row_total: float):
        self.row_id = row_id
        super().__init__(
            f"Payment breakdown for row {row_id} sums to {breakdown_total:g}, "
            f"expected {row_total:g}"
        )


class RecordNotFound(LedgerError, LookupError):
    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(f"{collection}/{key} not found")


class DuplicateRow(LedgerError):
    def __init__(self, row_id: str):
        self.row_id = row_id
        super().__init__(f"Row {row_id} already exists in this ledger")


class RowNotDeletable(LedgerError):
    def __init__(self, row_id: str):
        self.row_id = row_id
        super().__init__(f"Row {row_id} came from the calendar and cannot be deleted")


class MonthlyCloseBlocked(LedgerError):
    def __init__(self, clinic_id: str, month: str, unlocked_dates: list[str]):
        self.clinic_id = clinic_id
        self.month = month
        self.unlocked_dates = unlocked_dates
        super().__init__(
            f"Cannot close {month} for {clinic_id}; days not locked: {', '.join(unlocked_dates)}"
        )


class CalendarFetchError(LedgerError):
    def __init__(self, calendar_id: str, reason: str):
        self.calendar_id = calendar_id
        super().__init__(f"Calendar {calendar_id} fetch failed: {reason}")


class PersistenceFailure(LedgerError):
    def __init__(self, collection: Optional[str], key: Optional[str], reason: str):
        self.collection = collection
        self.key = key
        target = f"{collection}/{key}" if collection else "document store"
        super().__init__(f"Persistence failed for {target}: {reason}")


class TransactionConflict(PersistenceFailure):
    pass
