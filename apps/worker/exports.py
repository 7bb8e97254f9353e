"""
Month export: finalized (locked) ledger rows flattened for reporting.

Only locked days are exported; open days are still subject to edits.
"""
from __future__ import annotations

import csv
import io
import logging

from packages.db.repository import DocumentRepository
from packages.shared.keys import LEDGERS, month_key_range
from packages.shared.models import DailyLedger, ExportRow, LedgerTotals
from apps.worker.lib.row_normalize import RETAIL_FIELDS, TREATMENT_FIELDS, compute_totals

logger = logging.getLogger(__name__)


def locked_ledgers(repo: DocumentRepository, clinic_id: str, month: str) -> list[DailyLedger]:
    start, end = month_key_range(clinic_id, month)
    ledgers = [DailyLedger.model_validate(doc) for _, doc in repo.range_query(LEDGERS, start, end)]
    return [ledger for ledger in ledgers if ledger.clinic_id == clinic_id and ledger.is_locked]


def export_rows(repo: DocumentRepository, clinic_id: str, month: str) -> list[ExportRow]:
    rows: list[ExportRow] = []
    for ledger in locked_ledgers(repo, clinic_id, month):
        for row in ledger.rows:
            rows.append(ExportRow(
                date=ledger.date,
                row_id=row.id,
                patient_name=row.patient_name,
                chart_id=row.chart_id,
                doctor_name=row.doctor_name,
                procedure_note=row.procedure_note,
                payment_method=row.payment_method,
                treatments=row.treatments,
                retail=row.retail,
                payment_breakdown=row.payment_breakdown,
                total=row.actual_collected,
                prospect_note=row.prospect_note,
            ))
    logger.info(f"Exporting {len(rows)} locked rows for {clinic_id} {month}")
    return rows


def month_totals(repo: DocumentRepository, clinic_id: str, month: str) -> LedgerTotals:
    ledgers = locked_ledgers(repo, clinic_id, month)
    return compute_totals(
        [r for ledger in ledgers for r in ledger.rows],
        [e for ledger in ledgers for e in ledger.expenditures],
    )


def render_csv(rows: list[ExportRow]) -> bytes:
    """One line per exported row; amounts as plain numbers."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([
        "date", "row_id", "patient_name", "chart_id", "doctor", "procedure",
        *TREATMENT_FIELDS, *RETAIL_FIELDS,
        "payment_method", "cash", "card", "transfer", "total", "prospect_note",
    ])
    for row in rows:
        writer.writerow([
            row.date,
            row.row_id,
            row.patient_name,
            row.chart_id or "",
            row.doctor_name,
            row.procedure_note,
            *(f"{getattr(row.treatments, f):g}" for f in TREATMENT_FIELDS),
            *(f"{getattr(row.retail, f):g}" for f in RETAIL_FIELDS),
            row.payment_method.value,
            f"{row.payment_breakdown.cash:g}",
            f"{row.payment_breakdown.card:g}",
            f"{row.payment_breakdown.transfer:g}",
            f"{row.total:g}",
            row.prospect_note,
        ])
    return buf.getvalue().encode("utf-8")
