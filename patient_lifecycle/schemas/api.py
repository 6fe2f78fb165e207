"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from patient_lifecycle.errors import ErrorCode
from patient_lifecycle.models.types import AccessResult, PatientStatus


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

class PatientCreate(BaseModel):
    mrn: str = Field(..., min_length=1, max_length=64)


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    mrn: str
    status: PatientStatus
    created_at: datetime
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------------

class StatusChangeRequest(BaseModel):
    new_status: PatientStatus
    reason: str | None = Field(None, max_length=2000)
    actor_id: str = Field(..., min_length=1, max_length=128)


class StatusTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    from_status: PatientStatus
    to_status: PatientStatus
    reason: str | None
    changed_by: str
    timestamp: datetime


class AllowedTransitionsResponse(BaseModel):
    patient_id: UUID
    current_status: PatientStatus
    allowed: list[PatientStatus]


class StatusStatisticsResponse(BaseModel):
    total_patients: int
    status_counts: dict[PatientStatus, int]
    recent_transitions: list[StatusTransitionResponse]
    average_days_in_status: dict[PatientStatus, float]


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor: str
    subject: str
    operation: str
    data_type: str
    access_result: AccessResult
    timestamp: datetime
    old_values: Any = None
    new_values: Any = None
    justification: str | None = None
    checksum: str
    protected: bool


class AuditPageResponse(BaseModel):
    entries: list[AuditLogEntryResponse]
    total: int
    limit: int
    offset: int
    has_next: bool


class AuditModification(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class IntegrityResponse(BaseModel):
    entry_id: UUID
    valid: bool
    code: ErrorCode | None = None
    detail: str | None = None


class SubjectCount(BaseModel):
    subject: str
    access_count: int


class AuditStatisticsResponse(BaseModel):
    total_logs: int
    access_attempts: int
    denied_accesses: int
    unique_actors: int
    most_accessed_subjects: list[SubjectCount]
    operation_counts: dict[str, int]


class PurgeResponse(BaseModel):
    purged: int
    retention_days: int


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------

class ErrorBody(BaseModel):
    code: ErrorCode
    message: str


class ErrorResponse(BaseModel):
    error: ErrorBody


class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
