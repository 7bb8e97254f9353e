from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import PRIVILEGED_ROLES, AuditAction, UserRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Money(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    def total(self) -> float:
        return float(sum(getattr(self, name) for name in type(self).model_fields))


class TreatmentAmounts(_Money):
    reg_fee: float = Field(default=0, ge=0)
    copayment: float = Field(default=0, ge=0)
    sov: float = Field(default=0, ge=0)
    ortho: float = Field(default=0, ge=0)
    prostho: float = Field(default=0, ge=0)
    implant: float = Field(default=0, ge=0)
    whitening: float = Field(default=0, ge=0)
    perio: float = Field(default=0, ge=0)
    inv: float = Field(default=0, ge=0)  # Invisalign
    other_self_pay: float = Field(default=0, ge=0)


class RetailAmounts(_Money):
    diy_whitening: float = Field(default=0, ge=0)
    products: float = Field(default=0, ge=0)


class PaymentBreakdown(_Money):
    cash: float = Field(default=0, ge=0)
    card: float = Field(default=0, ge=0)
    transfer: float = Field(default=0, ge=0)

    def non_zero_buckets(self) -> int:
        return sum(1 for v in (self.cash, self.card, self.transfer) if v > 0)


class Expenditure(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    id: str
    item: str = ""
    amount: float = Field(default=0, ge=0)


class AuditEntry(BaseModel):
    timestamp: str
    user_id: str
    user_name: str
    action: AuditAction
    details: Optional[str] = None
    lock_id: Optional[str] = None


class Actor(BaseModel):
    """The staff member on whose behalf a ledger operation runs."""
    user_id: str
    name: str = ""
    role: UserRole = UserRole.STAFF

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES
