"""
Feature-flagged API authn/authz helpers.

Identity always comes from request headers so that audit entries carry the
acting staff member. Set `CLINIC_AUTH_ENFORCEMENT=true` to also require the
internal token issued to the front end and restrict each caller to the
clinics listed in `X-Clinic-Ids`.
"""
from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

from fastapi import Header, HTTPException

from packages.shared.models import Actor, UserRole

ALL_CLINICS = "*"


def _env_true(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def clinic_auth_enforcement_enabled() -> bool:
    return _env_true("CLINIC_AUTH_ENFORCEMENT", False)


@dataclass(frozen=True)
class RequestIdentity:
    user_id: str
    user_name: str
    role: UserRole
    clinic_ids: frozenset[str]

    def to_actor(self) -> Actor:
        return Actor(user_id=self.user_id, name=self.user_name, role=self.role)


def _parse_role(raw: str | None) -> UserRole:
    if not raw:
        return UserRole.STAFF
    try:
        return UserRole(raw.strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=f"Unknown role: {raw}") from exc


def get_request_identity(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_name: str | None = Header(default=None, alias="X-User-Name"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
    x_clinic_ids: str | None = Header(default=None, alias="X-Clinic-Ids"),
    x_internal_token: str | None = Header(default=None, alias="X-Internal-Token"),
) -> RequestIdentity:
    clinic_ids = frozenset(c.strip() for c in (x_clinic_ids or "").split(",") if c.strip())

    if not clinic_auth_enforcement_enabled():
        return RequestIdentity(
            user_id=x_user_id or "anonymous",
            user_name=x_user_name or "",
            role=_parse_role(x_user_role),
            clinic_ids=clinic_ids or frozenset({ALL_CLINICS}),
        )

    expected_token = os.getenv("API_INTERNAL_TOKEN", "").strip()
    if len(expected_token) < 24:
        raise HTTPException(
            status_code=500,
            detail="API is misconfigured: API_INTERNAL_TOKEN must be set when CLINIC_AUTH_ENFORCEMENT=true",
        )
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid internal token")
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=401,
            detail="Missing required identity headers: X-User-Id and X-User-Role",
        )
    return RequestIdentity(
        user_id=x_user_id,
        user_name=x_user_name or "",
        role=_parse_role(x_user_role),
        clinic_ids=clinic_ids,
    )


def assert_clinic_access(identity: RequestIdentity, clinic_id: str) -> None:
    if ALL_CLINICS in identity.clinic_ids or clinic_id in identity.clinic_ids:
        return
    raise HTTPException(status_code=403, detail="Forbidden: no access to this clinic")
