"""
Unit tests for month export of locked ledgers.
"""
import csv
import io

import pytest

from apps.worker.exports import export_rows, month_totals, render_csv
from apps.worker.lib.row_normalize import normalize_row
from packages.db.repository import InMemoryRepository
from packages.shared.keys import LEDGERS


def _ledger(repo, clinic_id, day, rows, locked=True, expenditures=()):
    repo.set(LEDGERS, f"{clinic_id}_{day}", {
        "clinic_id": clinic_id,
        "date": day,
        "is_locked": locked,
        "rows": [normalize_row(r).model_dump(mode="json") for r in rows],
        "expenditures": list(expenditures),
    })


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    _ledger(repo, "c1", "2024-05-01", [
        {"id": "r1", "patient_name": "王小明", "chart_id": "1234", "doctor_name": "Dr. Lin",
         "procedure_note": "植牙", "treatments": {"implant": 1000}, "payment_method": "card"},
        {"id": "r2", "patient_name": "林美麗", "treatments": {"copayment": 200}, "prospect_note": "NP"},
    ], expenditures=[{"id": "x1", "item": "lunch", "amount": 150}])
    _ledger(repo, "c1", "2024-05-02", [{"id": "r3", "patient_name": "Open", "treatments": {"sov": 999}}],
            locked=False)
    _ledger(repo, "c1", "2024-06-01", [{"id": "r4", "patient_name": "June", "treatments": {"sov": 1}}])
    _ledger(repo, "c10", "2024-05-01", [{"id": "r5", "patient_name": "Other", "treatments": {"sov": 5}}])
    return repo


def test_only_locked_days_of_the_month_are_exported(repo):
    rows = export_rows(repo, "c1", "2024-05")
    assert [r.row_id for r in rows] == ["r1", "r2"]
    assert rows[0].total == 1000
    assert rows[0].payment_breakdown.card == 1000


def test_month_totals_cover_locked_days(repo):
    totals = month_totals(repo, "c1", "2024-05")
    assert totals.total_revenue == 1200
    assert totals.card_revenue == 1000
    assert totals.cash_revenue == 200
    assert totals.total_expenditure == 150
    assert totals.cash_balance == 50
    assert totals.net_total == 1050


def test_csv_layout(repo):
    content = render_csv(export_rows(repo, "c1", "2024-05")).decode("utf-8")
    records = list(csv.DictReader(io.StringIO(content)))

    assert len(records) == 2
    first = records[0]
    assert first["date"] == "2024-05-01"
    assert first["chart_id"] == "1234"
    assert first["doctor"] == "Dr. Lin"
    assert first["implant"] == "1000"
    assert first["copayment"] == "0"
    assert first["payment_method"] == "card"
    assert first["card"] == "1000"
    assert first["total"] == "1000"
    assert records[1]["chart_id"] == ""
    assert records[1]["prospect_note"] == "NP"


def test_empty_month_renders_header_only(repo):
    content = render_csv(export_rows(repo, "c1", "2024-07")).decode("utf-8")
    assert content.strip().startswith("date,row_id,patient_name")
    assert len(content.strip().splitlines()) == 1
