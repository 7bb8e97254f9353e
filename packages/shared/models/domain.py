from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import (
    AuditEntry,
    Expenditure,
    PaymentBreakdown,
    RetailAmounts,
    TreatmentAmounts,
)
from .enums import LedgerState, Lifecycle, PaymentMethod


class Warning(BaseModel):
    code: str
    message: str
    doctor_id: Optional[str] = None
    row_id: Optional[str] = None


class LedgerConfig(BaseModel):
    """Business tunables for the ledger engine."""
    prospect_marker: str = "NP"
    timezone: str = "Asia/Taipei"
    unlocked_lookback_days: int = 60
    history_lookback_days: int = 180
    sync_max_workers: int = 4
    default_marketing_tags: list[str] = Field(
        default_factory=lambda: ["矯正諮詢", "植牙諮詢", "美白", "其他"]
    )


class ParsedTitle(BaseModel):
    chart_id: str
    patient_name: str
    procedure_note: str = ""
    is_prospect: bool = False
    status_prefix: str = ""


class CalendarEvent(BaseModel):
    id: str
    summary: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False


class Doctor(BaseModel):
    id: str
    name: str
    clinic_id: str = ""
    lifecycle: Lifecycle = Lifecycle.ACTIVE


class Clinic(BaseModel):
    id: str
    name: str = ""
    doctors: list[Doctor] = Field(default_factory=list)
    calendar_mapping: dict[str, str] = Field(default_factory=dict)  # doctor id -> calendar id

    def active_doctors(self) -> list[Doctor]:
        return [d for d in self.doctors if d.lifecycle == Lifecycle.ACTIVE]

    def doctor_name(self, doctor_id: str) -> str:
        for d in self.doctors:
            if d.id == doctor_id:
                return d.name
        return ""


class LedgerRow(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    id: str
    patient_name: str = ""
    chart_id: Optional[str] = None
    doctor_id: str = ""
    doctor_name: str = ""
    is_manual: bool = False
    attendance: bool = True
    treatments: TreatmentAmounts = Field(default_factory=TreatmentAmounts)
    retail: RetailAmounts = Field(default_factory=RetailAmounts)
    consultant: str = ""
    retail_staff: str = ""
    product_note: str = ""
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_breakdown: PaymentBreakdown = Field(default_factory=PaymentBreakdown)
    is_payment_manual: bool = False
    actual_collected: float = Field(default=0, ge=0)
    procedure_note: str = ""
    prospect_note: str = ""
    is_prospect: bool = False
    status_prefix: str = ""
    start_time: str = ""

    def total(self) -> float:
        return self.treatments.total() + self.retail.total()


class DailyLedger(BaseModel):
    clinic_id: str
    date: str  # YYYY-MM-DD
    rows: list[LedgerRow] = Field(default_factory=list)
    expenditures: list[Expenditure] = Field(default_factory=list)
    is_locked: bool = False
    audit_log: list[AuditEntry] = Field(default_factory=list)
    pending_lock_id: Optional[str] = None
    last_updated: Optional[str] = None

    @property
    def state(self) -> LedgerState:
        return LedgerState.LOCKED if self.is_locked else LedgerState.OPEN

    def row_ids(self) -> set[str]:
        return {r.id for r in self.rows}

    def find_row(self, row_id: str) -> Optional[LedgerRow]:
        for r in self.rows:
            if r.id == row_id:
                return r
        return None


class LedgerTotals(BaseModel):
    cash_revenue: float = 0
    card_revenue: float = 0
    transfer_revenue: float = 0
    total_revenue: float = 0
    total_expenditure: float = 0
    cash_balance: float = 0
    non_cash: float = 0
    net_total: float = 0


class VisitEntry(BaseModel):
    row_id: str = ""
    date: str
    doctor: str = ""
    treatment: str = ""
    amount: float = 0


class PatientProfile(BaseModel):
    key: str
    clinic_id: str
    chart_id: Optional[str] = None
    name: str
    last_visit_date: Optional[str] = None
    total_spending: float = 0
    purchased_item_categories: list[str] = Field(default_factory=list)
    visit_history: list[VisitEntry] = Field(default_factory=list)
    last_consultant: Optional[str] = None
    past_consultants: list[str] = Field(default_factory=list)
    applied_lock_ids: list[str] = Field(default_factory=list)


class ProspectRecord(BaseModel):
    id: str
    clinic_id: str
    date: str
    patient_name: str
    treatment: str = ""
    doctor_name: str = ""
    marketing_tag: str = ""
    source_channel: str = ""
    is_visited: bool = False
    is_closed: bool = False
    deal_amount: float = Field(default=0, ge=0)
    assigned_consultant: str = ""
    note: str = ""
    calendar_note: str = ""
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    updated_at: Optional[str] = None

    @property
    def is_hidden(self) -> bool:
        return self.lifecycle == Lifecycle.HIDDEN


class SyncResult(BaseModel):
    clinic_id: str
    date: str
    added_count: int = 0
    skipped_existing: int = 0
    rejected_titles: int = 0
    failed_doctors: list[str] = Field(default_factory=list)
    warnings: list[Warning] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_doctors)


class MonthlyClosing(BaseModel):
    clinic_id: str
    month: str  # YYYY-MM
    is_locked: bool = False
    locked_at: Optional[str] = None
    locked_by: Optional[str] = None
    unlocked_at: Optional[str] = None


class ExportRow(BaseModel):
    """One finalized ledger row flattened for reporting."""
    date: str
    row_id: str
    patient_name: str
    chart_id: Optional[str] = None
    doctor_name: str = ""
    procedure_note: str = ""
    payment_method: PaymentMethod
    treatments: TreatmentAmounts
    retail: RetailAmounts
    payment_breakdown: PaymentBreakdown
    total: float
    prospect_note: str = ""
