"""Value types shared by the ORM models, the services and the API schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class PatientStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    DISCHARGED = "discharged"
    INACTIVE = "inactive"


class AccessResult(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PARTIAL = "partial"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
