from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class CopyStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    LOST = "LOST"


class LoanStatus(str, Enum):
    BORROWED = "BORROWED"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"


class UserRole(str, Enum):
    USER = "USER"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def derive_status(loan, now: Optional[datetime] = None) -> LoanStatus:
    """Current status of a loan from its timestamps.

    A returned loan stays RETURNED whatever its due date. An open loan is
    OVERDUE once ``now`` is strictly past the due date, BORROWED otherwise.
    The status column stored with a loan is only a cache of this value.
    """
    if loan.return_date is not None:
        return LoanStatus.RETURNED
    now = as_utc(now) if now is not None else utcnow()
    if now > as_utc(loan.due_date):
        return LoanStatus.OVERDUE
    return LoanStatus.BORROWED
