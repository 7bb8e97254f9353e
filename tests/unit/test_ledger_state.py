"""
Unit tests for the daily ledger lifecycle.
"""
from datetime import datetime, timezone

import pytest

from apps.worker.exports import export_rows
from apps.worker.ledger_state import LedgerStateMachine
from packages.db.repository import InMemoryRepository
from packages.shared.errors import (
    DuplicateRow,
    LockViolation,
    MonthlyCloseBlocked,
    PaymentBreakdownMismatch,
    PermissionDenied,
    RecordNotFound,
    RowNotDeletable,
)
from packages.shared.keys import CLINICS, LEDGERS, PATIENTS, PROSPECTS
from packages.shared.models import Actor, AuditAction, PatientProfile, UserRole

DAY = "2024-05-01"
STAFF = Actor(user_id="u1", name="Staff", role=UserRole.STAFF)
MANAGER = Actor(user_id="m1", name="Manager", role=UserRole.MANAGER)


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    repo.set(CLINICS, "c1", {
        "id": "c1",
        "doctors": [{"id": "d1", "name": "Dr. Lin"}, {"id": "d2", "name": "Dr. Wu"}],
    })
    return repo


@pytest.fixture
def machine(repo):
    return LedgerStateMachine(repo)


def _add_patient_a(machine):
    machine.add_row("c1", DAY, {"id": "r1", "patient_name": "王小明", "chart_id": "1234",
                                "treatments": {"implant": 1000}, "consultant": "Amy"}, STAFF)
    machine.add_row("c1", DAY, {"id": "r2", "patient_name": "王小明", "chart_id": "1234",
                                "treatments": {"copayment": 500}, "payment_method": "card"}, STAFF)


# ── Row edits ────────────────────────────────────────────────────────────


class TestRowEdits:

    def test_add_row_is_manual_and_normalized(self, machine):
        row = machine.add_row("c1", DAY, {"patient_name": "王小明", "treatments": {"sov": "300"}}, STAFF)
        assert row.is_manual is True
        assert row.actual_collected == 300
        assert machine.load("c1", DAY).row_ids() == {row.id}

    def test_manual_row_gets_creation_time(self, machine):
        before = datetime.now(timezone.utc)
        row = machine.add_row("c1", DAY, {"patient_name": "路人"}, STAFF)
        assert datetime.fromisoformat(row.start_time) >= before

    def test_given_start_time_is_kept(self, machine):
        row = machine.add_row("c1", DAY, {"patient_name": "路人", "start_time": "2024-05-01T08:30:00+08:00"}, STAFF)
        assert row.start_time == "2024-05-01T08:30:00+08:00"

    def test_duplicate_row_id(self, machine):
        machine.add_row("c1", DAY, {"id": "r1", "patient_name": "A"}, STAFF)
        with pytest.raises(DuplicateRow):
            machine.add_row("c1", DAY, {"id": "r1", "patient_name": "B"}, STAFF)

    def test_update_records_diff_in_audit_log(self, machine):
        _add_patient_a(machine)
        machine.update_row("c1", DAY, "r2", {"treatments": {"copayment": 800}}, STAFF)

        ledger = machine.load("c1", DAY)
        assert ledger.find_row("r2").actual_collected == 800
        assert ledger.find_row("r2").payment_breakdown.card == 800
        entry = ledger.audit_log[-1]
        assert entry.action == AuditAction.UPDATE
        assert entry.user_id == "u1"
        assert entry.details == "[王小明] Copay: 500 -> 800"

    def test_unrestricted_update_leaves_no_audit_entry(self, machine):
        _add_patient_a(machine)
        machine.update_row("c1", DAY, "r1", {"consultant": "Ben"}, STAFF)
        ledger = machine.load("c1", DAY)
        assert ledger.find_row("r1").consultant == "Ben"
        assert ledger.audit_log == []

    def test_doctor_change_fills_doctor_name(self, machine):
        _add_patient_a(machine)
        row = machine.update_row("c1", DAY, "r1", {"doctor_id": "d2"}, STAFF)
        assert row.doctor_name == "Dr. Wu"

    def test_clearing_manual_split_rederives_breakdown(self, machine):
        machine.add_row("c1", DAY, {"id": "r1", "patient_name": "A", "treatments": {"implant": 1000},
                                    "payment_breakdown": {"cash": 400, "card": 600}}, STAFF)
        row = machine.update_row("c1", DAY, "r1", {"is_payment_manual": False, "payment_method": "transfer"}, STAFF)
        assert row.payment_breakdown.transfer == 1000
        assert row.payment_breakdown.cash == 0

    def test_bad_split_leaves_row_unchanged(self, machine):
        _add_patient_a(machine)
        with pytest.raises(PaymentBreakdownMismatch):
            machine.update_row("c1", DAY, "r1", {"payment_breakdown": {"cash": 1, "card": 1}}, STAFF)
        assert machine.load("c1", DAY).find_row("r1").payment_breakdown.cash == 1000

    def test_update_unknown_row(self, machine):
        with pytest.raises(RecordNotFound):
            machine.update_row("c1", DAY, "missing", {"consultant": "x"}, STAFF)

    def test_only_manual_rows_can_be_deleted(self, repo, machine):
        repo.set(LEDGERS, f"c1_{DAY}", {"clinic_id": "c1", "date": DAY, "rows": [{"id": "evt1", "patient_name": "A"}]})
        with pytest.raises(RowNotDeletable):
            machine.delete_row("c1", DAY, "evt1", STAFF)

        machine.add_row("c1", DAY, {"id": "m1", "patient_name": "B"}, STAFF)
        machine.delete_row("c1", DAY, "m1", STAFF)
        assert machine.load("c1", DAY).row_ids() == {"evt1"}

    def test_expenditures_are_sanitized(self, machine):
        saved = machine.set_expenditures("c1", DAY, [{"item": "lunch", "amount": "1,200"}, {"item": "x", "amount": -5}])
        assert [e.amount for e in saved] == [1200, 0]
        totals = machine.totals("c1", DAY)
        assert totals.total_expenditure == 1200


# ── Lock / unlock ────────────────────────────────────────────────────────


class TestLock:

    def test_lock_aggregates_rows_into_profile(self, repo, machine):
        _add_patient_a(machine)
        ledger = machine.lock("c1", DAY, STAFF)

        assert ledger.is_locked
        assert ledger.pending_lock_id is None
        assert ledger.audit_log[-1].action == AuditAction.LOCK
        profile = repo.get(PATIENTS, "c1_1234_王小明")
        assert profile["total_spending"] == 1500
        assert len(profile["visit_history"]) == 2
        assert profile["last_consultant"] == "Amy"

    def test_locked_amounts_cannot_change(self, machine):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        before = machine.load("c1", DAY)

        with pytest.raises(LockViolation) as exc:
            machine.update_row("c1", DAY, "r1", {"treatments": {"implant": 1}}, STAFF)

        assert exc.value.fields == ["treatments"]
        after = machine.load("c1", DAY)
        assert after.find_row("r1").treatments == before.find_row("r1").treatments
        assert after.audit_log == before.audit_log

    @pytest.mark.parametrize("updates", [
        {"patient_name": "x"},
        {"chart_id": "9999"},
        {"payment_method": "card"},
        {"doctor_id": "d2"},
        {"doctor_name": "Dr. Other"},
        {"retail": {"products": 5}},
    ])
    def test_every_restricted_field_is_frozen(self, machine, updates):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        with pytest.raises(LockViolation):
            machine.update_row("c1", DAY, "r1", updates, STAFF)

    def test_locked_doctor_name_survives_in_export(self, repo, machine):
        machine.add_row("c1", DAY, {"id": "r1", "patient_name": "王小明", "doctor_id": "d1",
                                    "doctor_name": "Dr. Lin", "treatments": {"implant": 1000}}, STAFF)
        machine.lock("c1", DAY, STAFF)

        with pytest.raises(LockViolation) as exc:
            machine.update_row("c1", DAY, "r1", {"doctor_name": "Dr. Other"}, STAFF)

        assert exc.value.fields == ["doctor_name"]
        assert [r.doctor_name for r in export_rows(repo, "c1", "2024-05")] == ["Dr. Lin"]

    def test_unrestricted_fields_stay_editable_after_lock(self, machine):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        row = machine.update_row("c1", DAY, "r1", {"prospect_note": "follow up"}, STAFF)
        assert row.prospect_note == "follow up"

    def test_locked_day_rejects_new_rows_and_expenditures(self, machine):
        machine.lock("c1", DAY, STAFF)
        with pytest.raises(LockViolation):
            machine.add_row("c1", DAY, {"patient_name": "A"}, STAFF)
        with pytest.raises(LockViolation):
            machine.set_expenditures("c1", DAY, [{"item": "x", "amount": 1}])

    def test_relock_is_noop(self, repo, machine):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        machine.lock("c1", DAY, STAFF)
        assert repo.get(PATIENTS, "c1_1234_王小明")["total_spending"] == 1500
        locks = [e for e in machine.load("c1", DAY).audit_log if e.action == AuditAction.LOCK]
        assert len(locks) == 1

    def test_interrupted_lock_resumes_without_double_count(self, repo, machine, monkeypatch):
        _add_patient_a(machine)
        calls = {"n": 0}
        real = machine.prospects.ensure_from_row

        def _crash(*args, **kwargs):
            calls["n"] += 1
            raise RuntimeError("connection lost")

        # Aggregation lands, then the prospect step dies before the marker clears.
        machine.add_row("c1", DAY, {"id": "np1", "patient_name": "新病人", "prospect_note": "NP"}, STAFF)
        monkeypatch.setattr(machine.prospects, "ensure_from_row", _crash)
        with pytest.raises(RuntimeError):
            machine.lock("c1", DAY, STAFF)
        assert calls["n"] == 1
        assert machine.load("c1", DAY).pending_lock_id is not None

        monkeypatch.setattr(machine.prospects, "ensure_from_row", real)
        ledger = machine.lock("c1", DAY, STAFF)

        assert ledger.pending_lock_id is None
        assert repo.get(PATIENTS, "c1_1234_王小明")["total_spending"] == 1500
        assert repo.get(PROSPECTS, f"c1_{DAY}_新病人") is not None

    def test_lock_creates_prospect_record(self, repo, machine):
        machine.add_row("c1", DAY, {"id": "np1", "patient_name": "新病人", "prospect_note": "np 初診",
                                    "procedure_note": "諮詢"}, STAFF)
        machine.lock("c1", DAY, STAFF)
        record = repo.get(PROSPECTS, f"c1_{DAY}_新病人")
        assert record["treatment"] == "諮詢"
        assert record["is_visited"] is True

    def test_blank_names_are_not_aggregated(self, repo, machine):
        machine.add_row("c1", DAY, {"patient_name": "", "treatments": {"copayment": 50}}, STAFF)
        machine.lock("c1", DAY, STAFF)
        assert repo.keys(PATIENTS) == []


class TestUnlock:

    def test_staff_cannot_unlock(self, machine):
        machine.lock("c1", DAY, STAFF)
        with pytest.raises(PermissionDenied):
            machine.unlock("c1", DAY, STAFF)
        assert machine.load("c1", DAY).is_locked

    def test_manager_unlock_is_audited_and_keeps_aggregates(self, repo, machine):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        ledger = machine.unlock("c1", DAY, MANAGER)

        assert not ledger.is_locked
        assert [e.action for e in ledger.audit_log] == [AuditAction.LOCK, AuditAction.UNLOCK]
        assert ledger.audit_log[-1].user_id == "m1"
        assert repo.get(PATIENTS, "c1_1234_王小明")["total_spending"] == 1500

    def test_unlock_fills_missing_chart_ids(self, repo, machine):
        repo.set(PATIENTS, "c1_1234_陳大文", PatientProfile(
            key="c1_1234_陳大文", clinic_id="c1", chart_id="1234", name="陳大文",
        ).model_dump(mode="json"))
        machine.add_row("c1", DAY, {"id": "r1", "patient_name": "陳大文", "treatments": {"copayment": 200}}, STAFF)
        machine.add_row("c1", DAY, {"id": "r2", "patient_name": "路人", "treatments": {"copayment": 100}}, STAFF)
        machine.add_row("c1", DAY, {"id": "r3", "patient_name": "", "treatments": {"copayment": 50}}, STAFF)
        machine.lock("c1", DAY, STAFF)

        ledger = machine.unlock("c1", DAY, MANAGER)

        assert ledger.find_row("r1").chart_id == "1234"
        assert ledger.find_row("r2").chart_id is None
        assert ledger.find_row("r3").chart_id is None
        assert [e.action for e in ledger.audit_log] == [AuditAction.LOCK, AuditAction.UPDATE, AuditAction.UNLOCK]
        assert ledger.audit_log[1].details == "[陳大文] ChartID: none -> 1234"
        assert ledger.audit_log[1].user_id == "m1"

    def test_reopened_day_is_editable(self, machine):
        _add_patient_a(machine)
        machine.lock("c1", DAY, STAFF)
        machine.unlock("c1", DAY, MANAGER)
        row = machine.update_row("c1", DAY, "r1", {"treatments": {"implant": 2000}}, STAFF)
        assert row.actual_collected == 2000

    def test_unlock_missing_ledger(self, machine):
        with pytest.raises(RecordNotFound):
            machine.unlock("c1", DAY, MANAGER)


# ── Look-back and monthly closing ────────────────────────────────────────


class TestClosingChecks:

    def test_previous_unlocked_dates(self, repo, machine):
        for day, locked in [("2024-03-01", False), ("2024-04-20", False), ("2024-04-25", True),
                            ("2024-04-30", False), (DAY, False)]:
            repo.set(LEDGERS, f"c1_{day}", {"clinic_id": "c1", "date": day, "is_locked": locked})
        assert machine.previous_unlocked_dates("c1", DAY) == ["2024-04-20", "2024-04-30"]

    def test_month_lock_requires_every_day_locked(self, repo, machine):
        machine.lock("c1", "2024-05-01", STAFF)
        machine.add_row("c1", "2024-05-02", {"patient_name": "A"}, STAFF)

        with pytest.raises(MonthlyCloseBlocked) as exc:
            machine.lock_month("c1", "2024-05", STAFF)
        assert exc.value.unlocked_dates == ["2024-05-02"]

        machine.lock("c1", "2024-05-02", STAFF)
        closing = machine.lock_month("c1", "2024-05", STAFF)
        assert closing.is_locked
        assert machine.month_status("c1", "2024-05").locked_by == "u1"

    def test_month_unlock_is_privileged(self, machine):
        machine.lock_month("c1", "2024-05", STAFF)
        with pytest.raises(PermissionDenied):
            machine.unlock_month("c1", "2024-05", STAFF)
        closing = machine.unlock_month("c1", "2024-05", MANAGER)
        assert closing.is_locked is False
        assert closing.unlocked_at is not None
