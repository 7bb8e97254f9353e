"""
API route: Prospect (NP) records and marketing tags
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field

from packages.shared.models import PRIVILEGED_ROLES, ProspectRecord, UserRole
from apps.api.authz import RequestIdentity, assert_clinic_access, get_request_identity
from apps.api.deps import get_prospects
from apps.worker.prospects import ProspectTracker

router = APIRouter(tags=["prospects"])

Day = Annotated[str, Path(pattern=r"^\d{4}-\d{2}-\d{2}$")]

_TAG_EDITORS = PRIVILEGED_ROLES | {UserRole.MARKETING}


class ProspectUpsertRequest(BaseModel):
    treatment: Optional[str] = None
    doctor_name: Optional[str] = None
    marketing_tag: Optional[str] = None
    source_channel: Optional[str] = None
    is_visited: Optional[bool] = None
    is_closed: Optional[bool] = None
    deal_amount: Any = None
    assigned_consultant: Optional[str] = None
    note: Optional[str] = None
    calendar_note: Optional[str] = None


class MarketingTagsRequest(BaseModel):
    tags: list[str] = Field(default_factory=list)


@router.put("/clinics/{clinic_id}/prospects/{day}/{patient_name}", response_model=ProspectRecord)
def upsert_prospect(
    clinic_id: str,
    day: Day,
    patient_name: str,
    req: ProspectUpsertRequest,
    tracker: ProspectTracker = Depends(get_prospects),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return tracker.upsert(clinic_id, day, patient_name, req.model_dump(exclude_unset=True, exclude_none=True))


@router.get("/clinics/{clinic_id}/prospects", response_model=list[ProspectRecord])
def list_prospects(
    clinic_id: str,
    start: str = Query(pattern=r"^\d{4}-\d{2}-\d{2}$"),
    end: str = Query(pattern=r"^\d{4}-\d{2}-\d{2}$"),
    include_hidden: bool = False,
    tracker: ProspectTracker = Depends(get_prospects),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return tracker.list_for_range(clinic_id, start, end, include_hidden=include_hidden)


@router.post("/prospects/{record_id}/hide", response_model=ProspectRecord)
def hide_prospect(
    record_id: str,
    tracker: ProspectTracker = Depends(get_prospects),
    identity: RequestIdentity = Depends(get_request_identity),
):
    """Mark a record as not actually a prospect. The record is kept."""
    record = tracker.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Prospect record not found")
    assert_clinic_access(identity, record.clinic_id)
    return tracker.hide(record_id)


@router.get("/settings/marketing-tags", response_model=list[str])
def get_marketing_tags(
    tracker: ProspectTracker = Depends(get_prospects),
    identity: RequestIdentity = Depends(get_request_identity),
):
    return tracker.marketing_tags()


@router.put("/settings/marketing-tags", response_model=list[str])
def put_marketing_tags(
    req: MarketingTagsRequest,
    tracker: ProspectTracker = Depends(get_prospects),
    identity: RequestIdentity = Depends(get_request_identity),
):
    if identity.role not in _TAG_EDITORS:
        raise HTTPException(status_code=403, detail="Only managers or marketing staff can edit tags")
    return tracker.save_marketing_tags(req.tags)
