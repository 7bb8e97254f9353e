"""
Calendar merge engine.

Pulls one clinic-day of appointments from every mapped doctor calendar,
parses the titles and merges new rows into the day's ledger. Event ids are
the row ids, so re-running a sync never duplicates a row.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from packages.db.repository import DocumentRepository, Transaction
from packages.shared.errors import InvalidIdentity, LockViolation, RecordNotFound
from packages.shared.keys import CLINICS, LEDGERS, canonical_chart_id, ledger_key
from packages.shared.models import (
    CalendarEvent,
    Clinic,
    DailyLedger,
    Doctor,
    LedgerConfig,
    LedgerRow,
    SyncResult,
    Warning,
    utcnow,
)
from apps.worker.calendar_source import EventSource
from apps.worker.identity import IdentityResolver
from apps.worker.lib.clinic_time import day_window
from apps.worker.lib.row_normalize import normalize_row
from apps.worker.lib.title_parser import parse_title

logger = logging.getLogger(__name__)


def load_clinic(repo: DocumentRepository, clinic_id: str) -> Clinic:
    doc = repo.get(CLINICS, clinic_id)
    if doc is None:
        raise RecordNotFound(CLINICS, clinic_id)
    return Clinic.model_validate(doc)


class CalendarMergeEngine:

    def __init__(
        self,
        repo: DocumentRepository,
        source: EventSource,
        resolver: Optional[IdentityResolver] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self.repo = repo
        self.source = source
        self.config = config or LedgerConfig()
        self.resolver = resolver or IdentityResolver(repo, self.config)

    def sync(self, clinic_id: str, day: str) -> SyncResult:
        clinic = load_clinic(self.repo, clinic_id)
        key = ledger_key(clinic_id, day)
        result = SyncResult(clinic_id=clinic_id, date=day)

        snapshot = self.repo.get(LEDGERS, key)
        ledger = DailyLedger.model_validate(snapshot) if snapshot else DailyLedger(clinic_id=clinic_id, date=day)
        if ledger.is_locked:
            raise LockViolation(clinic_id, day)
        known_ids = ledger.row_ids()

        fetched = self._fetch_all(clinic, day, result)

        candidates: list[LedgerRow] = []
        seen: set[str] = set()
        for doctor, events in fetched:
            for event in events:
                if event.all_day or event.id in seen:
                    continue
                seen.add(event.id)
                if event.id in known_ids:
                    result.skipped_existing += 1
                    continue
                row = self._build_row(clinic_id, doctor, event, result)
                if row is not None:
                    candidates.append(row)

        if not candidates:
            logger.info(f"Sync {key}: nothing new ({result.skipped_existing} already present)")
            return result

        def _merge(txn: Transaction) -> tuple[int, int]:
            current = txn.get(LEDGERS, key)
            latest = DailyLedger.model_validate(current) if current else DailyLedger(clinic_id=clinic_id, date=day)
            if latest.is_locked:
                raise LockViolation(clinic_id, day)
            present = latest.row_ids()
            fresh = [r for r in candidates if r.id not in present]
            if not fresh:
                return 0, len(candidates)
            rows = sorted(latest.rows + fresh, key=lambda r: r.start_time or "")
            txn.set(LEDGERS, key, {
                "clinic_id": clinic_id,
                "date": day,
                "rows": [r.model_dump(mode="json") for r in rows],
                "last_updated": utcnow().isoformat(),
            }, merge=True)
            return len(fresh), len(candidates) - len(fresh)

        added, raced = self.repo.run_transaction(_merge)
        result.added_count = added
        result.skipped_existing += raced
        logger.info(
            f"Sync {key}: added {added}, skipped {result.skipped_existing}, "
            f"rejected {result.rejected_titles}, failed doctors {len(result.failed_doctors)}"
        )
        return result

    def _fetch_all(self, clinic: Clinic, day: str, result: SyncResult) -> list[tuple[Doctor, list[CalendarEvent]]]:
        start, end = day_window(day, self.config.timezone)
        mapped = [d for d in clinic.active_doctors() if clinic.calendar_mapping.get(d.id)]
        if not mapped:
            return []

        by_doctor: dict[str, list[CalendarEvent]] = {}
        workers = max(1, min(self.config.sync_max_workers, len(mapped)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {
                executor.submit(self.source.list_events, clinic.calendar_mapping[d.id], start, end): d
                for d in mapped
            }
            for future in as_completed(future_map):
                doctor = future_map[future]
                try:
                    by_doctor[doctor.id] = future.result()
                except Exception as exc:
                    logger.warning(f"Calendar fetch failed for doctor {doctor.id} ({clinic.id} {day}): {exc}")
                    result.failed_doctors.append(doctor.id)
                    result.warnings.append(Warning(
                        code="PARTIAL_SYNC_FAILURE",
                        message=f"Could not fetch calendar for {doctor.name or doctor.id}: {exc}",
                        doctor_id=doctor.id,
                    ))

        result.failed_doctors.sort()
        # Keep the clinic's doctor order regardless of completion order.
        return [(d, by_doctor[d.id]) for d in mapped if d.id in by_doctor]

    def _build_row(self, clinic_id: str, doctor: Doctor, event: CalendarEvent, result: SyncResult) -> Optional[LedgerRow]:
        parsed = parse_title(event.summary)
        if parsed is None:
            logger.debug(f"Skipping excluded title for event {event.id}")
            result.rejected_titles += 1
            return None

        chart_id = canonical_chart_id(parsed.chart_id)
        consultant = ""
        try:
            profile = self.resolver.lookup(clinic_id, parsed.patient_name, chart_id)
        except InvalidIdentity:
            result.warnings.append(Warning(
                code="INVALID_IDENTITY",
                message=f"Event {event.id} has no patient name",
                doctor_id=doctor.id,
                row_id=event.id,
            ))
            return None
        if profile is not None:
            # A title without a chart id picks up the one already on file.
            chart_id = profile.chart_id or chart_id
            consultant = profile.last_consultant or ""

        return normalize_row({
            "id": event.id,
            "patient_name": parsed.patient_name,
            "chart_id": chart_id,
            "doctor_id": doctor.id,
            "doctor_name": doctor.name,
            "is_manual": False,
            "attendance": True,
            "consultant": consultant,
            "procedure_note": parsed.procedure_note,
            "prospect_note": self.config.prospect_marker if parsed.is_prospect else "",
            "is_prospect": parsed.is_prospect,
            "status_prefix": parsed.status_prefix,
            "start_time": event.start.isoformat() if event.start else "",
        })
