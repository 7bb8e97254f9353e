"""
Daily ledger lifecycle: OPEN -> LOCKED, and LOCKED -> OPEN for privileged
staff only.

Locking happens in two steps. The first transaction flips ``is_locked``,
appends the LOCK audit entry and records a ``pending_lock_id``. Patient
aggregation and prospect records follow, each guarded by that lock id, and
a final write clears the marker. A crash in between leaves a locked ledger
with a pending marker; calling ``lock`` (or ``unlock``) again finishes the
aggregation without double counting.
"""
from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Mapping
from typing import Any, Optional

from packages.db.field_ops import ArrayUnion
from packages.db.repository import DocumentRepository, Transaction
from packages.shared.errors import (
    DuplicateRow,
    LockViolation,
    MonthlyCloseBlocked,
    PermissionDenied,
    RecordNotFound,
    RowNotDeletable,
)
from packages.shared.keys import (
    CLINICS,
    LEDGERS,
    MONTHLY_CLOSINGS,
    ledger_key,
    lookback_key_range,
    month_key_range,
    monthly_closing_key,
)
from packages.shared.models import (
    Actor,
    AuditAction,
    AuditEntry,
    Clinic,
    DailyLedger,
    Expenditure,
    LedgerConfig,
    LedgerRow,
    LedgerTotals,
    MonthlyClosing,
    utcnow,
)
from apps.worker.identity import IdentityResolver
from apps.worker.lib.row_diff import describe_row_changes
from apps.worker.lib.row_normalize import compute_totals, normalize_row, safe_amount
from apps.worker.prospects import ProspectTracker, is_prospect_row

logger = logging.getLogger(__name__)

# Fields that become read-only once the day is locked.
RESTRICTED_FIELDS = frozenset({
    "treatments",
    "retail",
    "patient_name",
    "payment_method",
    "payment_breakdown",
    "is_payment_manual",
    "doctor_id",
    "doctor_name",
    "chart_id",
})


def _deep_merge(base: dict, updates: Mapping) -> dict:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_ledger(txn: Transaction, clinic_id: str, day: str) -> DailyLedger:
    doc = txn.get(LEDGERS, ledger_key(clinic_id, day))
    return DailyLedger.model_validate(doc) if doc else DailyLedger(clinic_id=clinic_id, date=day)


def _rows_payload(rows: list[LedgerRow]) -> list[dict]:
    return [r.model_dump(mode="json") for r in rows]


class LedgerStateMachine:

    def __init__(
        self,
        repo: DocumentRepository,
        resolver: Optional[IdentityResolver] = None,
        prospects: Optional[ProspectTracker] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self.repo = repo
        self.config = config or LedgerConfig()
        self.resolver = resolver or IdentityResolver(repo, self.config)
        self.prospects = prospects or ProspectTracker(repo, self.config)

    def load(self, clinic_id: str, day: str) -> DailyLedger:
        return self.repo.run_transaction(lambda txn: _read_ledger(txn, clinic_id, day))

    def totals(self, clinic_id: str, day: str) -> LedgerTotals:
        ledger = self.load(clinic_id, day)
        return compute_totals(ledger.rows, ledger.expenditures)

    def _append_audit(self, txn: Transaction, clinic_id: str, day: str, entry: AuditEntry) -> None:
        """The only write path into a ledger's audit log."""
        txn.set(LEDGERS, ledger_key(clinic_id, day), {
            "audit_log": ArrayUnion(entry.model_dump(mode="json")),
        }, merge=True)

    def _write_rows(self, txn: Transaction, clinic_id: str, day: str, rows: list[LedgerRow]) -> None:
        txn.set(LEDGERS, ledger_key(clinic_id, day), {
            "clinic_id": clinic_id,
            "date": day,
            "rows": _rows_payload(rows),
            "last_updated": utcnow().isoformat(),
        }, merge=True)

    # ── Row edits ─────────────────────────────────────────────────────────

    def add_row(self, clinic_id: str, day: str, raw: Mapping[str, Any], actor: Actor) -> LedgerRow:
        row = normalize_row({
            **raw,
            "is_manual": True,
            "start_time": raw.get("start_time") or utcnow().isoformat(),
        })

        def _write(txn: Transaction) -> None:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.is_locked:
                raise LockViolation(clinic_id, day, ("rows",))
            if row.id in ledger.row_ids():
                raise DuplicateRow(row.id)
            self._write_rows(txn, clinic_id, day, ledger.rows + [row])

        self.repo.run_transaction(_write)
        logger.info(f"{actor.user_id} added manual row {row.id} to {clinic_id} {day}")
        return row

    def update_row(
        self,
        clinic_id: str,
        day: str,
        row_id: str,
        updates: Mapping[str, Any],
        actor: Actor,
    ) -> LedgerRow:
        """Apply a partial edit to one row.

        Restricted fields are rejected on a locked ledger before anything is
        written. On an open ledger, restricted changes are recorded in the
        audit log as an "old -> new" summary.
        """
        touched = RESTRICTED_FIELDS.intersection(updates)
        key = ledger_key(clinic_id, day)

        def _write(txn: Transaction) -> LedgerRow:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.is_locked and touched:
                raise LockViolation(clinic_id, day, touched)
            old = ledger.find_row(row_id)
            if old is None:
                raise RecordNotFound(LEDGERS, f"{key}/rows/{row_id}")

            changes = dict(updates)
            changes.pop("id", None)
            merged = _deep_merge(old.model_dump(mode="json"), changes)
            if changes.get("is_payment_manual") is False and "payment_breakdown" not in changes:
                merged.pop("payment_breakdown", None)
            if "doctor_id" in changes and "doctor_name" not in changes:
                clinic_doc = txn.get(CLINICS, clinic_id)
                if clinic_doc:
                    merged["doctor_name"] = Clinic.model_validate(clinic_doc).doctor_name(changes["doctor_id"])
            new = normalize_row(merged)

            rows = [new if r.id == row_id else r for r in ledger.rows]
            self._write_rows(txn, clinic_id, day, rows)
            details = describe_row_changes(old, new)
            if details:
                self._append_audit(txn, clinic_id, day, AuditEntry(
                    timestamp=utcnow().isoformat(),
                    user_id=actor.user_id,
                    user_name=actor.name,
                    action=AuditAction.UPDATE,
                    details=details,
                ))
            return new

        return self.repo.run_transaction(_write)

    def delete_row(self, clinic_id: str, day: str, row_id: str, actor: Actor) -> None:
        key = ledger_key(clinic_id, day)

        def _write(txn: Transaction) -> None:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.is_locked:
                raise LockViolation(clinic_id, day, ("rows",))
            row = ledger.find_row(row_id)
            if row is None:
                raise RecordNotFound(LEDGERS, f"{key}/rows/{row_id}")
            if not row.is_manual:
                raise RowNotDeletable(row_id)
            self._write_rows(txn, clinic_id, day, [r for r in ledger.rows if r.id != row_id])

        self.repo.run_transaction(_write)
        logger.info(f"{actor.user_id} deleted manual row {row_id} from {key}")

    def set_expenditures(self, clinic_id: str, day: str, items: list[Mapping[str, Any]]) -> list[Expenditure]:
        expenditures = [
            Expenditure(
                id=str(item.get("id") or uuid.uuid4().hex),
                item=str(item.get("item") or ""),
                amount=safe_amount(item.get("amount")),
            )
            for item in items
        ]

        def _write(txn: Transaction) -> None:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.is_locked:
                raise LockViolation(clinic_id, day, ("expenditures",))
            txn.set(LEDGERS, ledger_key(clinic_id, day), {
                "clinic_id": clinic_id,
                "date": day,
                "expenditures": [e.model_dump(mode="json") for e in expenditures],
                "last_updated": utcnow().isoformat(),
            }, merge=True)

        self.repo.run_transaction(_write)
        return expenditures

    # ── Lock / unlock ─────────────────────────────────────────────────────

    def lock(self, clinic_id: str, day: str, actor: Actor) -> DailyLedger:
        """Close the day. Re-running on a locked day finishes any interrupted aggregation."""
        lock_id = uuid.uuid4().hex

        def _flip(txn: Transaction) -> tuple[DailyLedger, Optional[str]]:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.is_locked:
                return ledger, ledger.pending_lock_id
            txn.set(LEDGERS, ledger_key(clinic_id, day), {
                "clinic_id": clinic_id,
                "date": day,
                "is_locked": True,
                "pending_lock_id": lock_id,
                "last_updated": utcnow().isoformat(),
            }, merge=True)
            self._append_audit(txn, clinic_id, day, AuditEntry(
                timestamp=utcnow().isoformat(),
                user_id=actor.user_id,
                user_name=actor.name,
                action=AuditAction.LOCK,
                lock_id=lock_id,
            ))
            return ledger, lock_id

        ledger, pending = self.repo.run_transaction(_flip)
        if pending is None:
            logger.info(f"Ledger {clinic_id} {day} already locked")
        else:
            if pending != lock_id:
                logger.info(f"Resuming interrupted lock {pending} for {clinic_id} {day}")
            self._finish_lock(clinic_id, day, ledger.rows, pending)
        return self.load(clinic_id, day)

    def _finish_lock(self, clinic_id: str, day: str, rows: list[LedgerRow], lock_id: str) -> None:
        updated = self.resolver.aggregate_locked_rows(clinic_id, day, rows, lock_id)
        created = 0
        for row in rows:
            if is_prospect_row(row, self.config.prospect_marker) and self.prospects.ensure_from_row(clinic_id, day, row):
                created += 1

        def _clear(txn: Transaction) -> None:
            ledger = _read_ledger(txn, clinic_id, day)
            if ledger.pending_lock_id == lock_id:
                txn.set(LEDGERS, ledger_key(clinic_id, day), {"pending_lock_id": None}, merge=True)

        self.repo.run_transaction(_clear)
        logger.info(
            f"Locked {clinic_id} {day} (lock {lock_id}): {updated} profiles updated, "
            f"{created} prospect records created"
        )

    def _chart_id_fills(self, clinic_id: str, rows: list[LedgerRow]) -> dict[str, str]:
        """Chart ids on file for rows that were locked without one, keyed by patient name."""
        fills: dict[str, str] = {}
        for row in rows:
            name = row.patient_name.strip()
            if row.chart_id or not name or name in fills:
                continue
            profile = self.resolver.lookup(clinic_id, name)
            if profile is not None and profile.chart_id:
                fills[name] = profile.chart_id
        return fills

    def unlock(self, clinic_id: str, day: str, actor: Actor) -> DailyLedger:
        """Reopen a locked day. Profile aggregates already applied are left in place.

        Rows still missing a chart id pick up the one on the patient's
        profile; each fill is audited as an UPDATE before the UNLOCK entry.
        """
        if not actor.is_privileged:
            raise PermissionDenied(f"Role {actor.role.value} may not reopen a closed day")

        current = self.load(clinic_id, day)
        if current.is_locked and current.pending_lock_id:
            self._finish_lock(clinic_id, day, current.rows, current.pending_lock_id)
        fills = self._chart_id_fills(clinic_id, current.rows) if current.is_locked else {}

        def _reopen(txn: Transaction) -> int:
            doc = txn.get(LEDGERS, ledger_key(clinic_id, day))
            if doc is None:
                raise RecordNotFound(LEDGERS, ledger_key(clinic_id, day))
            if not doc.get("is_locked"):
                return -1
            ledger = DailyLedger.model_validate(doc)
            rows: list[LedgerRow] = []
            filled: list[tuple[LedgerRow, LedgerRow]] = []
            for row in ledger.rows:
                chart_id = None if row.chart_id else fills.get(row.patient_name.strip())
                if chart_id:
                    new = row.model_copy(update={"chart_id": chart_id})
                    filled.append((row, new))
                    row = new
                rows.append(row)
            if filled:
                self._write_rows(txn, clinic_id, day, rows)
                for old, new in filled:
                    self._append_audit(txn, clinic_id, day, AuditEntry(
                        timestamp=utcnow().isoformat(),
                        user_id=actor.user_id,
                        user_name=actor.name,
                        action=AuditAction.UPDATE,
                        details=describe_row_changes(old, new),
                    ))
            txn.set(LEDGERS, ledger_key(clinic_id, day), {
                "is_locked": False,
                "last_updated": utcnow().isoformat(),
            }, merge=True)
            self._append_audit(txn, clinic_id, day, AuditEntry(
                timestamp=utcnow().isoformat(),
                user_id=actor.user_id,
                user_name=actor.name,
                action=AuditAction.UNLOCK,
            ))
            return len(filled)

        filled = self.repo.run_transaction(_reopen)
        if filled >= 0:
            logger.info(f"{actor.user_id} reopened {clinic_id} {day} ({filled} chart ids filled)")
        return self.load(clinic_id, day)

    def previous_unlocked_dates(self, clinic_id: str, day: str) -> list[str]:
        """Dates before ``day`` within the look-back window that are still open."""
        start, _ = lookback_key_range(clinic_id, day, self.config.unlocked_lookback_days)
        end = ledger_key(clinic_id, day)
        dates = [
            doc.get("date")
            for key, doc in self.repo.range_query(LEDGERS, start, end)
            if key != end and doc.get("clinic_id") == clinic_id and not doc.get("is_locked")
        ]
        return sorted(d for d in dates if d)

    # ── Monthly closing ───────────────────────────────────────────────────

    def month_status(self, clinic_id: str, month: str) -> Optional[MonthlyClosing]:
        doc = self.repo.get(MONTHLY_CLOSINGS, monthly_closing_key(clinic_id, month))
        return MonthlyClosing.model_validate(doc) if doc is not None else None

    def lock_month(self, clinic_id: str, month: str, actor: Actor) -> MonthlyClosing:
        start, end = month_key_range(clinic_id, month)
        unlocked = sorted(
            doc.get("date")
            for _, doc in self.repo.range_query(LEDGERS, start, end)
            if doc.get("clinic_id") == clinic_id and not doc.get("is_locked")
        )
        if unlocked:
            raise MonthlyCloseBlocked(clinic_id, month, unlocked)

        closing = MonthlyClosing(
            clinic_id=clinic_id,
            month=month,
            is_locked=True,
            locked_at=utcnow().isoformat(),
            locked_by=actor.user_id,
        )
        self.repo.set(MONTHLY_CLOSINGS, monthly_closing_key(clinic_id, month), closing.model_dump(mode="json"))
        logger.info(f"{actor.user_id} closed month {month} for {clinic_id}")
        return closing

    def unlock_month(self, clinic_id: str, month: str, actor: Actor) -> MonthlyClosing:
        if not actor.is_privileged:
            raise PermissionDenied(f"Role {actor.role.value} may not reopen a closed month")
        key = monthly_closing_key(clinic_id, month)

        def _reopen(txn: Transaction) -> dict:
            txn.update(MONTHLY_CLOSINGS, key, {"is_locked": False, "unlocked_at": utcnow().isoformat()})
            return txn.get(MONTHLY_CLOSINGS, key)

        closing = MonthlyClosing.model_validate(self.repo.run_transaction(_reopen))
        logger.info(f"{actor.user_id} reopened month {month} for {clinic_id}")
        return closing
