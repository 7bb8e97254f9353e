"""
API route: Patient profiles (lookup, history, chart id merge)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from packages.shared.models import PatientProfile, VisitEntry
from apps.api.authz import RequestIdentity, assert_clinic_access, get_request_identity
from apps.api.deps import get_resolver
from apps.worker.identity import IdentityResolver

router = APIRouter(tags=["patients"])


class MergeRequest(BaseModel):
    chart_id: Optional[str] = None


@router.get("/clinics/{clinic_id}/patients/lookup", response_model=PatientProfile)
def lookup_patient(
    clinic_id: str,
    name: str = Query(min_length=1),
    chart_id: Optional[str] = None,
    resolver: IdentityResolver = Depends(get_resolver),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    profile = resolver.lookup(clinic_id, name, chart_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return profile


@router.get("/clinics/{clinic_id}/patients/history", response_model=list[VisitEntry])
def patient_history(
    clinic_id: str,
    name: str = Query(min_length=1),
    chart_id: Optional[str] = None,
    resolver: IdentityResolver = Depends(get_resolver),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    return resolver.history(clinic_id, name, chart_id)


@router.get("/patients/{key}", response_model=PatientProfile)
def get_patient(
    key: str,
    resolver: IdentityResolver = Depends(get_resolver),
    identity: RequestIdentity = Depends(get_request_identity),
):
    profile = resolver.get(key)
    if profile is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    assert_clinic_access(identity, profile.clinic_id)
    return profile


@router.post("/patients/{key}/merge", response_model=PatientProfile)
def merge_patient(
    key: str,
    req: MergeRequest,
    resolver: IdentityResolver = Depends(get_resolver),
    identity: RequestIdentity = Depends(get_request_identity),
):
    """Re-key a profile under a newly learned or corrected chart id."""
    current = resolver.get(key)
    if current is not None:
        assert_clinic_access(identity, current.clinic_id)
    merged = resolver.merge(key, req.chart_id)
    assert_clinic_access(identity, merged.clinic_id)
    return merged
