"""
Persisted document key formats and collection names.

These formats are shared with data already in production and must stay
bit-exact:

    daily ledger     {clinicId}_{YYYY-MM-DD}
    patient profile  {clinicId}_{chartId or "NP"}_{sanitizedName}
    prospect record  {clinicId}_{date}_{sanitizedName}
"""
from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Optional

LEDGERS = "daily_accounting"
PATIENTS = "patients"
PATIENT_MERGES = "patient_merges"
PROSPECTS = "np_records"
CLINICS = "clinics"
MONTHLY_CLOSINGS = "monthly_closings"
SETTINGS = "settings"

PROSPECT_SENTINEL = "NP"

# Upper bound used when turning a key prefix into a range query.
KEY_RANGE_END = "\uf8ff"

_UNSAFE_NAME_CHARS = re.compile(r"[/\s]")


def sanitize_name(name: str) -> str:
    """Replace each slash and whitespace character with an underscore."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def canonical_chart_id(chart_id: Optional[str]) -> Optional[str]:
    """Blank values and the prospect sentinel both mean "no chart id"."""
    if chart_id is None:
        return None
    value = str(chart_id).strip()
    if not value or value == PROSPECT_SENTINEL:
        return None
    return value


def ledger_key(clinic_id: str, day: str) -> str:
    return f"{clinic_id}_{day}"


def profile_key(clinic_id: str, chart_id: Optional[str], name: str) -> str:
    safe_id = canonical_chart_id(chart_id) or PROSPECT_SENTINEL
    return f"{clinic_id}_{safe_id}_{sanitize_name(name)}"


def prospect_key(clinic_id: str, day: str, name: str) -> str:
    return f"{clinic_id}_{day}_{sanitize_name(name)}"


def monthly_closing_key(clinic_id: str, month: str) -> str:
    return f"{clinic_id}_{month}"


def month_key_range(clinic_id: str, month: str) -> tuple[str, str]:
    """Inclusive ledger key bounds covering every day of ``month`` (YYYY-MM)."""
    return ledger_key(clinic_id, f"{month}-01"), ledger_key(clinic_id, f"{month}-31")


def lookback_key_range(clinic_id: str, day: str, days: int) -> tuple[str, str]:
    """Inclusive ledger key bounds from ``days`` before ``day`` up to ``day``."""
    start = date.fromisoformat(day) - timedelta(days=days)
    return ledger_key(clinic_id, start.isoformat()), ledger_key(clinic_id, day)
