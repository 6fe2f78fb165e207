"""Immutable copies of stored rows handed back to callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from patient_lifecycle.errors import ErrorCode
from patient_lifecycle.models.types import AccessResult, PatientStatus


@dataclass(frozen=True)
class StatusTransition:
    id: UUID
    patient_id: UUID
    from_status: PatientStatus
    to_status: PatientStatus
    reason: str | None
    changed_by: str
    timestamp: datetime


@dataclass(frozen=True)
class AuditLogEntry:
    id: UUID
    actor: str
    subject: str
    operation: str
    data_type: str
    access_result: AccessResult
    timestamp: datetime
    checksum: str
    protected: bool
    old_values: Any = None
    new_values: Any = None
    justification: str | None = None
    context: dict[str, Any] | None = None


@dataclass(frozen=True)
class NewAuditEntry:
    """Caller-supplied fields of an entry; the store fills in the rest."""

    actor: str
    subject: str
    operation: str
    data_type: str
    access_result: AccessResult = AccessResult.GRANTED
    timestamp: datetime | None = None
    old_values: Any = None
    new_values: Any = None
    justification: str | None = None
    context: dict[str, Any] | None = None


@dataclass(frozen=True)
class AttemptResult:
    success: bool
    code: ErrorCode | None = None
    detail: str | None = None


@dataclass(frozen=True)
class IntegrityReport:
    entry_id: UUID
    valid: bool
    code: ErrorCode | None = None
    detail: str | None = None


@dataclass(frozen=True)
class AuditPage:
    entries: list[AuditLogEntry]
    total: int
    limit: int
    offset: int

    @property
    def has_next(self) -> bool:
        return self.offset + len(self.entries) < self.total


@dataclass(frozen=True)
class AuditStatistics:
    total_logs: int
    access_attempts: int
    denied_accesses: int
    unique_actors: int
    most_accessed_subjects: list[tuple[str, int]] = field(default_factory=list)
    operation_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusStatistics:
    total_patients: int
    status_counts: dict[PatientStatus, int]
    recent_transitions: list[StatusTransition]
    average_days_in_status: dict[PatientStatus, float] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditQuery:
    actor: str | None = None
    subject: str | None = None
    operation: str | None = None
    data_type: str | None = None
    access_result: AccessResult | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class StatusHistoryQuery:
    patient_id: UUID | None = None
    changed_by: str | None = None
    to_status: PatientStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    limit: int = 50
    offset: int = 0
