"""
API route: Daily ledgers (sync, row edits, lock/unlock) and monthly closing
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Response
from pydantic import BaseModel, Field

from packages.shared.models import (
    DailyLedger,
    Expenditure,
    LedgerRow,
    LedgerTotals,
    MonthlyClosing,
    SyncResult,
)
from apps.api.authz import RequestIdentity, assert_clinic_access, get_request_identity
from apps.api.deps import get_ledger_machine, get_merge_engine
from apps.worker.calendar_sync import CalendarMergeEngine
from apps.worker.ledger_state import LedgerStateMachine

router = APIRouter(prefix="/clinics/{clinic_id}", tags=["ledgers"])

Day = Annotated[str, Path(pattern=r"^\d{4}-\d{2}-\d{2}$")]
Month = Annotated[str, Path(pattern=r"^\d{4}-\d{2}$")]


class LedgerResponse(BaseModel):
    ledger: DailyLedger
    totals: LedgerTotals


class RowUpdateRequest(BaseModel):
    updates: dict[str, Any] = Field(min_length=1)


class ExpenditureItem(BaseModel):
    id: Optional[str] = None
    item: str = ""
    amount: Any = 0


class PreviousUnlockedResponse(BaseModel):
    date: str
    unlocked_dates: list[str]


def _ledger_response(machine: LedgerStateMachine, ledger: DailyLedger) -> LedgerResponse:
    return LedgerResponse(ledger=ledger, totals=machine.totals(ledger.clinic_id, ledger.date))


@router.get("/ledgers/{day}", response_model=LedgerResponse)
def get_ledger(
    clinic_id: str,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return _ledger_response(machine, machine.load(clinic_id, day))


@router.post("/ledgers/{day}/sync", response_model=SyncResult)
def sync_ledger(
    clinic_id: str,
    day: Day,
    engine: CalendarMergeEngine = Depends(get_merge_engine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    """Pull the day's appointments from every mapped doctor calendar."""
    assert_clinic_access(identity, clinic_id)
    return engine.sync(clinic_id, day)


@router.post("/ledgers/{day}/rows", response_model=LedgerRow, status_code=201)
def add_row(
    clinic_id: str,
    row: dict[str, Any],
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return machine.add_row(clinic_id, day, row, identity.to_actor())


@router.patch("/ledgers/{day}/rows/{row_id}", response_model=LedgerRow)
def update_row(
    clinic_id: str,
    row_id: str,
    req: RowUpdateRequest,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return machine.update_row(clinic_id, day, row_id, req.updates, identity.to_actor())


@router.delete("/ledgers/{day}/rows/{row_id}", status_code=204)
def delete_row(
    clinic_id: str,
    row_id: str,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    machine.delete_row(clinic_id, day, row_id, identity.to_actor())
    return Response(status_code=204)


@router.put("/ledgers/{day}/expenditures", response_model=list[Expenditure])
def put_expenditures(
    clinic_id: str,
    items: list[ExpenditureItem],
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return machine.set_expenditures(clinic_id, day, [i.model_dump() for i in items])


@router.post("/ledgers/{day}/lock", response_model=LedgerResponse)
def lock_ledger(
    clinic_id: str,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return _ledger_response(machine, machine.lock(clinic_id, day, identity.to_actor()))


@router.post("/ledgers/{day}/unlock", response_model=LedgerResponse)
def unlock_ledger(
    clinic_id: str,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return _ledger_response(machine, machine.unlock(clinic_id, day, identity.to_actor()))


@router.get("/ledgers/{day}/previous-unlocked", response_model=PreviousUnlockedResponse)
def previous_unlocked(
    clinic_id: str,
    day: Day,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return PreviousUnlockedResponse(date=day, unlocked_dates=machine.previous_unlocked_dates(clinic_id, day))


@router.get("/months/{month}/lock", response_model=MonthlyClosing)
def get_month_status(
    clinic_id: str,
    month: Month,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    status = machine.month_status(clinic_id, month)
    if status is None:
        raise HTTPException(status_code=404, detail="Month has not been closed")
    return status


@router.post("/months/{month}/lock", response_model=MonthlyClosing)
def lock_month(
    clinic_id: str,
    month: Month,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return machine.lock_month(clinic_id, month, identity.to_actor())


@router.delete("/months/{month}/lock", response_model=MonthlyClosing)
def unlock_month(
    clinic_id: str,
    month: Month,
    machine: LedgerStateMachine = Depends(get_ledger_machine),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return machine.unlock_month(clinic_id, month, identity.to_actor())
