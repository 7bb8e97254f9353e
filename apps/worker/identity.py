"""
Patient identity resolution, lifetime aggregation and profile merges.

Profiles are addressed by the composite key
``{clinic}_{chartId or "NP"}_{sanitizedName}``. Lookup tries the exact key
first and then falls back to a name-only match inside the clinic, so a
profile created before the chart number was known is reused instead of
duplicated. A known chart number only ever falls back to NP profiles.

Lifetime aggregates only ever move through store-side increments and array
unions; a lock id recorded on the profile keeps a retried lock from
counting the same day twice.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable, Optional

from packages.db.field_ops import ArrayUnion, Increment
from packages.db.repository import DocumentRepository, Transaction
from packages.shared.errors import InvalidIdentity, RecordNotFound
from packages.shared.keys import (
    LEDGERS,
    PATIENT_MERGES,
    PATIENTS,
    canonical_chart_id,
    lookback_key_range,
    profile_key,
)
from packages.shared.models import (
    DailyLedger,
    LedgerConfig,
    LedgerRow,
    PatientProfile,
    VisitEntry,
    utcnow,
)
from apps.worker.lib.clinic_time import local_today
from apps.worker.lib.row_normalize import purchased_categories

logger = logging.getLogger(__name__)


def _require_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidIdentity()
    return cleaned


def _union(*lists: Iterable) -> list:
    seen: list = []
    for items in lists:
        for item in items:
            if item not in seen:
                seen.append(item)
    return seen


def merge_profiles(
    target: Optional[PatientProfile],
    source: PatientProfile,
    key: str,
    chart_id: Optional[str],
) -> PatientProfile:
    """Fold ``source`` into ``target`` without losing anything.

    Totals are summed, sets and visit history unioned, the later visit date
    wins and the consultant of the more recent visit is kept.
    """
    if target is None:
        return source.model_copy(update={"key": key, "chart_id": chart_id}, deep=True)

    newer = target
    if (source.last_visit_date or "") > (target.last_visit_date or ""):
        newer = source
    dates = [d for d in (target.last_visit_date, source.last_visit_date) if d]

    return PatientProfile(
        key=key,
        clinic_id=target.clinic_id,
        chart_id=chart_id,
        name=target.name or source.name,
        last_visit_date=max(dates) if dates else None,
        total_spending=target.total_spending + source.total_spending,
        purchased_item_categories=_union(target.purchased_item_categories, source.purchased_item_categories),
        visit_history=_union(target.visit_history, source.visit_history),
        last_consultant=newer.last_consultant or target.last_consultant or source.last_consultant,
        past_consultants=_union(target.past_consultants, source.past_consultants),
        applied_lock_ids=_union(target.applied_lock_ids, source.applied_lock_ids),
    )


class IdentityResolver:

    def __init__(self, repo: DocumentRepository, config: Optional[LedgerConfig] = None):
        self.repo = repo
        self.config = config or LedgerConfig()

    def get(self, key: str) -> Optional[PatientProfile]:
        doc = self.repo.get(PATIENTS, key)
        return PatientProfile.model_validate(doc) if doc is not None else None

    def find_by_name(self, clinic_id: str, name: str, unconfirmed_only: bool = False) -> Optional[PatientProfile]:
        """Name-only match inside a clinic.

        With ``unconfirmed_only`` only NP profiles qualify, so a patient who
        shares a name with someone holding another chart id stays separate.
        """
        candidates = [
            PatientProfile.model_validate(doc)
            for _, doc in self.repo.query_prefix(PATIENTS, f"{clinic_id}_")
            if doc.get("clinic_id") == clinic_id and doc.get("name") == name
            and not (unconfirmed_only and doc.get("chart_id"))
        ]
        if not candidates:
            return None
        # Prefer confirmed chart numbers, then the most recent visit.
        return max(candidates, key=lambda p: (p.chart_id is not None, p.last_visit_date or "", p.key))

    def lookup(self, clinic_id: str, name: str, chart_id: Optional[str] = None) -> Optional[PatientProfile]:
        name = _require_name(name)
        chart_id = canonical_chart_id(chart_id)
        exact = self.get(profile_key(clinic_id, chart_id, name))
        if exact is not None:
            return exact
        return self.find_by_name(clinic_id, name, unconfirmed_only=chart_id is not None)

    def resolve(self, clinic_id: str, name: str, chart_id: Optional[str] = None) -> PatientProfile:
        """Find the canonical profile for a patient, creating it when absent."""
        name = _require_name(name)
        chart_id = canonical_chart_id(chart_id)
        found = self.lookup(clinic_id, name, chart_id)
        if found is not None:
            return found

        key = profile_key(clinic_id, chart_id, name)

        def _create(txn: Transaction) -> dict:
            existing = txn.get(PATIENTS, key)
            if existing is not None:
                return existing
            doc = PatientProfile(key=key, clinic_id=clinic_id, chart_id=chart_id, name=name).model_dump(mode="json")
            txn.set(PATIENTS, key, doc)
            return doc

        profile = PatientProfile.model_validate(self.repo.run_transaction(_create))
        logger.info(f"Created patient profile {key}")
        return profile

    # ── Lock-time aggregation ─────────────────────────────────────────────

    def aggregate_locked_rows(self, clinic_id: str, day: str, rows: Iterable[LedgerRow], lock_id: str) -> int:
        """Fold one locked day's rows into patient profiles. Returns profiles updated."""
        groups: "OrderedDict[str, list[LedgerRow]]" = OrderedDict()
        for row in rows:
            if not row.patient_name.strip():
                continue
            groups.setdefault(profile_key(clinic_id, row.chart_id, row.patient_name), []).append(row)

        applied = 0
        for key, group in groups.items():
            if self._apply_group(clinic_id, day, key, group, lock_id):
                applied += 1
        return applied

    def _apply_group(self, clinic_id: str, day: str, key: str, group: list[LedgerRow], lock_id: str) -> bool:
        rep = group[0]
        total = sum(r.actual_collected for r in group)
        visits = [
            VisitEntry(
                row_id=r.id,
                date=day,
                doctor=r.doctor_name,
                treatment=r.procedure_note,
                amount=r.actual_collected,
            ).model_dump(mode="json")
            for r in group
        ]
        items = _union(*(purchased_categories(r.treatments) for r in group))
        consultants = _union([c for c in (r.consultant or r.retail_staff for r in group) if c])

        def _write(txn: Transaction) -> bool:
            current = txn.get(PATIENTS, key)
            if current is not None and lock_id in (current.get("applied_lock_ids") or []):
                return False
            patch: dict = {
                "key": key,
                "clinic_id": clinic_id,
                "chart_id": rep.chart_id,
                "name": rep.patient_name,
                "total_spending": Increment(total),
                "visit_history": ArrayUnion(*visits),
                "applied_lock_ids": ArrayUnion(lock_id),
            }
            if items:
                patch["purchased_item_categories"] = ArrayUnion(*items)
            is_latest = current is None or day >= (current.get("last_visit_date") or "")
            if is_latest:
                patch["last_visit_date"] = day
            if consultants:
                patch["past_consultants"] = ArrayUnion(*consultants)
                if is_latest:
                    patch["last_consultant"] = consultants[-1]
            txn.set(PATIENTS, key, patch, merge=True)
            return True

        written = self.repo.run_transaction(_write)
        if not written:
            logger.info(f"Lock {lock_id} already applied to {key}; skipping")
        return written

    # ── Merges ────────────────────────────────────────────────────────────

    def merge(self, old_key: str, new_chart_id: Optional[str]) -> PatientProfile:
        """Move a profile to the key for ``new_chart_id``, folding into any profile already there."""
        chart_id = canonical_chart_id(new_chart_id)
        snapshot = self.repo.get(PATIENTS, old_key)
        if snapshot is None:
            return self._merged_target(old_key)

        source = PatientProfile.model_validate(snapshot)
        new_key = profile_key(source.clinic_id, chart_id, source.name)
        if new_key == old_key:
            return source

        def _merge(txn: Transaction) -> Optional[dict]:
            src_doc = txn.get(PATIENTS, old_key)
            if src_doc is None:
                return None
            tgt_doc = txn.get(PATIENTS, new_key)
            src = PatientProfile.model_validate(src_doc)
            tgt = PatientProfile.model_validate(tgt_doc) if tgt_doc is not None else None
            if tgt is not None:
                logger.info(
                    f"Merging populated profiles {old_key} -> {new_key} "
                    f"(totals {src.total_spending:g} + {tgt.total_spending:g})"
                )
            merged = merge_profiles(tgt, src, new_key, chart_id).model_dump(mode="json")
            txn.set(PATIENTS, new_key, merged)
            txn.delete(PATIENTS, old_key)
            txn.set(PATIENT_MERGES, old_key, {"target_key": new_key, "merged_at": utcnow().isoformat()})
            return merged

        merged = self.repo.run_transaction(_merge)
        if merged is None:
            return self._merged_target(old_key)
        logger.info(f"Merged patient profile {old_key} into {new_key}")
        return PatientProfile.model_validate(merged)

    def _merged_target(self, old_key: str) -> PatientProfile:
        redirect = self.repo.get(PATIENT_MERGES, old_key)
        if redirect:
            target = self.get(redirect["target_key"])
            if target is not None:
                return target
        raise RecordNotFound(PATIENTS, old_key)

    # ── History ───────────────────────────────────────────────────────────

    def history(
        self,
        clinic_id: str,
        name: str,
        chart_id: Optional[str] = None,
        today: Optional[str] = None,
    ) -> list[VisitEntry]:
        """Visits for a patient across recent ledgers, newest first."""
        name = _require_name(name)
        chart_id = canonical_chart_id(chart_id)
        today = today or local_today(self.config.timezone)
        start, end = lookback_key_range(clinic_id, today, self.config.history_lookback_days)

        visits: list[VisitEntry] = []
        for _, doc in self.repo.range_query(LEDGERS, start, end):
            ledger = DailyLedger.model_validate(doc)
            for row in ledger.rows:
                if row.patient_name != name:
                    continue
                if chart_id and row.chart_id != chart_id:
                    continue
                visits.append(VisitEntry(
                    row_id=row.id,
                    date=ledger.date,
                    doctor=row.doctor_name,
                    treatment=row.procedure_note,
                    amount=row.actual_collected,
                ))
        visits.sort(key=lambda v: v.date, reverse=True)
        return visits
