from .common import (
    Actor,
    AuditEntry,
    Expenditure,
    PaymentBreakdown,
    RetailAmounts,
    TreatmentAmounts,
    utcnow,
)
from .domain import (
    CalendarEvent,
    Clinic,
    DailyLedger,
    Doctor,
    ExportRow,
    LedgerConfig,
    LedgerRow,
    LedgerTotals,
    MonthlyClosing,
    ParsedTitle,
    PatientProfile,
    ProspectRecord,
    SyncResult,
    VisitEntry,
    Warning,
)
from .enums import (
    PRIVILEGED_ROLES,
    AuditAction,
    LedgerState,
    Lifecycle,
    PaymentMethod,
    UserRole,
)
