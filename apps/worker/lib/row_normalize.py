"""
Ledger row aggregation.

Every row is normalized before it is persisted or summed: monetary fields
become finite non-negative numbers, the row total is recomputed, and the
payment breakdown is derived from the payment method unless the operator
split the payment explicitly.
"""
from __future__ import annotations

import math
import uuid
from collections.abc import Mapping
from typing import Any, Iterable, Union

from packages.shared.errors import PaymentBreakdownMismatch
from packages.shared.keys import canonical_chart_id
from packages.shared.models import (
    Expenditure,
    LedgerRow,
    LedgerTotals,
    PaymentBreakdown,
    PaymentMethod,
    RetailAmounts,
    TreatmentAmounts,
)

TREATMENT_FIELDS = tuple(TreatmentAmounts.model_fields)
RETAIL_FIELDS = tuple(RetailAmounts.model_fields)

# Self-pay treatment field -> purchased item category tag kept on the patient profile.
PURCHASED_CATEGORY_TAGS = {
    "prostho": "假牙",
    "implant": "植牙",
    "ortho": "矯正",
    "sov": "SOV",
    "inv": "隱適美",
    "whitening": "美白",
    "perio": "牙周",
}

_TEXT_FIELDS = (
    "doctor_id", "doctor_name", "consultant", "retail_staff", "product_note",
    "procedure_note", "prospect_note", "status_prefix", "start_time",
)


def safe_amount(value: Any) -> float:
    """Coerce to a finite non-negative float; anything unusable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        if not value:
            return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(amount) or amount < 0:
        return 0.0
    return amount


def _as_dict(value: Any) -> dict:
    if value is None:
        return {}
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _coerce_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError:
        return PaymentMethod.CASH


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def derive_breakdown(method: PaymentMethod, total: float) -> PaymentBreakdown:
    if method == PaymentMethod.CARD:
        return PaymentBreakdown(card=total)
    if method == PaymentMethod.TRANSFER:
        return PaymentBreakdown(transfer=total)
    return PaymentBreakdown(cash=total)


def normalize_row(raw: Union[LedgerRow, Mapping]) -> LedgerRow:
    data = _as_dict(raw)
    row_id = _text(data.get("id")) or uuid.uuid4().hex

    treatment_src = _as_dict(data.get("treatments"))
    retail_src = _as_dict(data.get("retail"))
    treatments = TreatmentAmounts(**{f: safe_amount(treatment_src.get(f)) for f in TREATMENT_FIELDS})
    retail = RetailAmounts(**{f: safe_amount(retail_src.get(f)) for f in RETAIL_FIELDS})
    total = treatments.total() + retail.total()

    method = _coerce_method(data.get("payment_method"))
    given_src = _as_dict(data.get("payment_breakdown"))
    given = PaymentBreakdown(
        cash=safe_amount(given_src.get("cash")),
        card=safe_amount(given_src.get("card")),
        transfer=safe_amount(given_src.get("transfer")),
    )
    is_payment_manual = bool(data.get("is_payment_manual")) or given.non_zero_buckets() > 1
    if is_payment_manual:
        if not math.isclose(given.total(), total, abs_tol=0.005):
            raise PaymentBreakdownMismatch(row_id, given.total(), total)
        breakdown = given
    else:
        breakdown = derive_breakdown(method, total)

    attendance = data.get("attendance")
    return LedgerRow(
        id=row_id,
        patient_name=_text(data.get("patient_name")).strip(),
        chart_id=canonical_chart_id(data.get("chart_id")),
        is_manual=bool(data.get("is_manual")),
        attendance=True if attendance is None else bool(attendance),
        treatments=treatments,
        retail=retail,
        payment_method=method,
        payment_breakdown=breakdown,
        is_payment_manual=is_payment_manual,
        actual_collected=total,
        is_prospect=bool(data.get("is_prospect")),
        **{f: _text(data.get(f)) for f in _TEXT_FIELDS},
    )


def purchased_categories(treatments: TreatmentAmounts) -> list[str]:
    return [tag for field, tag in PURCHASED_CATEGORY_TAGS.items() if getattr(treatments, field) > 0]


def compute_totals(rows: Iterable[LedgerRow], expenditures: Iterable[Expenditure] = ()) -> LedgerTotals:
    cash = card = transfer = 0.0
    for row in rows:
        cash += row.payment_breakdown.cash
        card += row.payment_breakdown.card
        transfer += row.payment_breakdown.transfer
    revenue = cash + card + transfer
    spent = sum(safe_amount(e.amount) for e in expenditures)
    return LedgerTotals(
        cash_revenue=cash,
        card_revenue=card,
        transfer_revenue=transfer,
        total_revenue=revenue,
        total_expenditure=spent,
        cash_balance=cash - spent,
        non_cash=card + transfer,
        net_total=revenue - spent,
    )
