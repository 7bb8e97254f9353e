"""
Human-readable change summaries for ledger row edits (audit log details).
"""
from __future__ import annotations

from typing import Optional

from packages.shared.models import LedgerRow

TREATMENT_LABELS = {
    "reg_fee": "Registration",
    "copayment": "Copay",
    "sov": "SOV",
    "ortho": "Ortho",
    "prostho": "Prostho",
    "implant": "Implant",
    "whitening": "Whitening",
    "perio": "Perio",
    "inv": "Invisalign",
    "other_self_pay": "Other self-pay",
}

RETAIL_LABELS = {
    "diy_whitening": "DIY whitening",
    "products": "Products",
}


def _fmt(value: float) -> str:
    return f"{value:g}"


def describe_row_changes(old: LedgerRow, new: LedgerRow) -> Optional[str]:
    """Return "[name] field: old -> new, ..." or None when nothing restricted changed."""
    changes: list[str] = []
    if old.chart_id != new.chart_id:
        changes.append(f"ChartID: {old.chart_id or 'none'} -> {new.chart_id or 'none'}")
    if old.patient_name != new.patient_name:
        changes.append(f"Name: {old.patient_name} -> {new.patient_name}")
    if old.doctor_id != new.doctor_id or old.doctor_name != new.doctor_name:
        changes.append(f"Doctor: {old.doctor_name or old.doctor_id} -> {new.doctor_name or new.doctor_id}")
    if old.payment_method != new.payment_method:
        changes.append(f"Payment: {old.payment_method.value} -> {new.payment_method.value}")

    for field, label in TREATMENT_LABELS.items():
        before, after = getattr(old.treatments, field), getattr(new.treatments, field)
        if before != after:
            changes.append(f"{label}: {_fmt(before)} -> {_fmt(after)}")
    for field, label in RETAIL_LABELS.items():
        before, after = getattr(old.retail, field), getattr(new.retail, field)
        if before != after:
            changes.append(f"{label}: {_fmt(before)} -> {_fmt(after)}")

    if (old.is_payment_manual or new.is_payment_manual) and old.payment_breakdown != new.payment_breakdown:
        b0, b1 = old.payment_breakdown, new.payment_breakdown
        changes.append(
            f"Split: {_fmt(b0.cash)}/{_fmt(b0.card)}/{_fmt(b0.transfer)}"
            f" -> {_fmt(b1.cash)}/{_fmt(b1.card)}/{_fmt(b1.transfer)}"
        )

    if not changes:
        return None
    return f"[{new.patient_name or 'unnamed'}] {', '.join(changes)}"
