"""
API route: Clinics (doctor directory and calendar mapping)
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from packages.db.repository import DocumentRepository
from packages.shared.keys import CLINICS
from packages.shared.models import Clinic, Lifecycle, PRIVILEGED_ROLES
from apps.api.authz import RequestIdentity, assert_clinic_access, get_request_identity
from apps.api.deps import get_repository

router = APIRouter(prefix="/clinics", tags=["clinics"])


class DoctorPayload(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    lifecycle: Lifecycle = Lifecycle.ACTIVE


class ClinicUpsertRequest(BaseModel):
    name: str = Field(default="", max_length=200)
    doctors: list[DoctorPayload] = Field(default_factory=list)
    calendar_mapping: dict[str, str] = Field(default_factory=dict)


@router.get("/{clinic_id}", response_model=Clinic)
def get_clinic(
    clinic_id: str,
    repo: DocumentRepository = Depends(get_repository),
    identity: RequestIdentity = Depends(get_request_identity),
):
    assert_clinic_access(identity, clinic_id)
    doc = repo.get(CLINICS, clinic_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Clinic not found")
    return Clinic.model_validate(doc)


@router.put("/{clinic_id}", response_model=Clinic)
def put_clinic(
    clinic_id: str,
    req: ClinicUpsertRequest,
    repo: DocumentRepository = Depends(get_repository),
    identity: RequestIdentity = Depends(get_request_identity),
):
    """Replace the clinic's doctor list and calendar mapping."""
    assert_clinic_access(identity, clinic_id)
    if identity.role not in PRIVILEGED_ROLES:
        raise HTTPException(status_code=403, detail="Only managers can edit the clinic directory")

    known = {d.id for d in req.doctors}
    unknown = sorted(set(req.calendar_mapping) - known)
    if unknown:
        raise HTTPException(status_code=400, detail=f"Calendar mapping references unknown doctors: {', '.join(unknown)}")

    clinic = Clinic(
        id=clinic_id,
        name=req.name,
        doctors=[{**d.model_dump(), "clinic_id": clinic_id} for d in req.doctors],
        calendar_mapping={k: v for k, v in req.calendar_mapping.items() if v},
    )
    repo.set(CLINICS, clinic_id, clinic.model_dump(mode="json"))
    return clinic
