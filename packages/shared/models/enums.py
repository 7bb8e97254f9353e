from enum import Enum


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class LedgerState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


class AuditAction(str, Enum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    UPDATE = "UPDATE"


class Lifecycle(str, Enum):
    """Soft-delete tag shared by doctors and prospect records."""
    ACTIVE = "active"
    HIDDEN = "hidden"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    MARKETING = "marketing"
    GUEST = "guest"


PRIVILEGED_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER})
