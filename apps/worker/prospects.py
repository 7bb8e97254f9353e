"""
Prospect (NP) tracking: marketing attribution and conversion for visits
without a confirmed chart id. Records are soft-deleted by moving them to the
hidden lifecycle; nothing here ever removes a document.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from packages.db.repository import DocumentRepository, Transaction
from packages.shared.errors import InvalidIdentity
from packages.shared.keys import KEY_RANGE_END, PROSPECTS, SETTINGS, prospect_key
from packages.shared.models import LedgerConfig, LedgerRow, Lifecycle, ProspectRecord, utcnow
from apps.worker.lib.row_normalize import safe_amount
from apps.worker.lib.title_parser import parse_source

logger = logging.getLogger(__name__)

MARKETING_TAGS_KEY = "marketing_tags"

EDITABLE_FIELDS = (
    "treatment",
    "doctor_name",
    "marketing_tag",
    "source_channel",
    "is_visited",
    "is_closed",
    "deal_amount",
    "assigned_consultant",
    "note",
    "calendar_note",
)


def is_prospect_row(row: LedgerRow, marker: str = "NP") -> bool:
    return row.is_prospect or marker.upper() in (row.prospect_note or "").upper()


class ProspectTracker:

    def __init__(self, repo: DocumentRepository, config: Optional[LedgerConfig] = None):
        self.repo = repo
        self.config = config or LedgerConfig()

    def get(self, record_id: str) -> Optional[ProspectRecord]:
        doc = self.repo.get(PROSPECTS, record_id)
        return ProspectRecord.model_validate(doc) if doc is not None else None

    def upsert(self, clinic_id: str, day: str, patient_name: str, fields: Mapping[str, Any]) -> ProspectRecord:
        name = (patient_name or "").strip()
        if not name:
            raise InvalidIdentity()
        record_id = prospect_key(clinic_id, day, name)
        updates = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS}

        def _write(txn: Transaction) -> dict:
            current = txn.get(PROSPECTS, record_id) or {
                "id": record_id,
                "clinic_id": clinic_id,
                "date": day,
                "patient_name": name,
            }
            doc = {**current, **updates}
            doc["deal_amount"] = safe_amount(doc.get("deal_amount"))
            # A closed deal implies the patient showed up.
            if doc.get("is_closed"):
                doc["is_visited"] = True
            doc["updated_at"] = utcnow().isoformat()
            record = ProspectRecord.model_validate(doc).model_dump(mode="json")
            txn.set(PROSPECTS, record_id, record)
            return record

        return ProspectRecord.model_validate(self.repo.run_transaction(_write))

    def hide(self, record_id: str) -> ProspectRecord:
        def _write(txn: Transaction) -> dict:
            txn.update(PROSPECTS, record_id, {
                "lifecycle": Lifecycle.HIDDEN.value,
                "updated_at": utcnow().isoformat(),
            })
            return txn.get(PROSPECTS, record_id)

        record = ProspectRecord.model_validate(self.repo.run_transaction(_write))
        logger.info(f"Hid prospect record {record_id}")
        return record

    def list_for_range(
        self,
        clinic_id: str,
        start_date: str,
        end_date: str,
        include_hidden: bool = False,
    ) -> list[ProspectRecord]:
        docs = self.repo.range_query(
            PROSPECTS, f"{clinic_id}_{start_date}", f"{clinic_id}_{end_date}{KEY_RANGE_END}"
        )
        records = [
            ProspectRecord.model_validate(doc)
            for _, doc in docs
            if doc.get("clinic_id") == clinic_id
        ]
        if not include_hidden:
            records = [r for r in records if not r.is_hidden]
        return records

    def ensure_from_row(self, clinic_id: str, day: str, row: LedgerRow) -> bool:
        """Create a record for a prospect row unless one already exists."""
        name = row.patient_name.strip()
        if not name:
            return False
        record_id = prospect_key(clinic_id, day, name)
        record = ProspectRecord(
            id=record_id,
            clinic_id=clinic_id,
            date=day,
            patient_name=name,
            treatment=row.procedure_note,
            doctor_name=row.doctor_name,
            is_visited=row.attendance,
            assigned_consultant=row.consultant,
            calendar_note=row.prospect_note,
            source_channel=parse_source(f"{row.prospect_note} {row.procedure_note}"),
            updated_at=utcnow().isoformat(),
        ).model_dump(mode="json")
        return self.repo.run_transaction(lambda txn: txn.create(PROSPECTS, record_id, record))

    def marketing_tags(self) -> list[str]:
        doc = self.repo.get(SETTINGS, MARKETING_TAGS_KEY)
        if doc is None:
            return list(self.config.default_marketing_tags)
        return list(doc.get("tags") or [])

    def save_marketing_tags(self, tags: list[str]) -> list[str]:
        cleaned: list[str] = []
        for tag in tags:
            tag = (tag or "").strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        self.repo.set(SETTINGS, MARKETING_TAGS_KEY, {"tags": cleaned}, merge=True)
        return cleaned
