"""
API route: Month exports of locked ledger rows
"""
from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Response
from pydantic import BaseModel

from packages.db.repository import DocumentRepository
from packages.shared.models import ExportRow, LedgerTotals
from apps.api.authz import RequestIdentity, assert_clinic_access, get_request_identity
from apps.api.deps import get_repository
from apps.worker.exports import export_rows, month_totals, render_csv

router = APIRouter(prefix="/clinics/{clinic_id}", tags=["exports"])

Month = Annotated[str, Path(pattern=r"^\d{4}-\d{2}$")]


class ExportResponse(BaseModel):
    clinic_id: str
    month: str
    rows: list[ExportRow]
    totals: LedgerTotals


@router.get("/months/{month}/export", response_model=ExportResponse)
def get_month_export(
    clinic_id: str,
    month: Month,
    repo: DocumentRepository = Depends(get_repository),
    identity: RequestIdentity = Depends(get_request_identity),
):
    """Locked rows of the month with their totals."""
    assert_clinic_access(identity, clinic_id)
    return ExportResponse(
        clinic_id=clinic_id,
        month=month,
        rows=export_rows(repo, clinic_id, month),
        totals=month_totals(repo, clinic_id, month),
    )


@router.get("/months/{month}/export.csv")
def get_month_export_csv(
    clinic_id: str,
    month: Month,
    repo: DocumentRepository = Depends(get_repository),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    body = render_csv(export_rows(repo, clinic_id, month))
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{clinic_id}_{month}.csv"'},
    )
