"""
FastAPI routes over the lifecycle and audit core.

Every handler that touches patient or audit data records the attempt via
the AccessLogger before it returns, including attempts that fail.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_lifecycle.api.dependencies import Services, access_context, get_actor, get_services
from patient_lifecycle.config import settings
from patient_lifecycle.errors import AuditEntryNotFound, ErrorCode, LifecycleError, ProtectedEntryError
from patient_lifecycle.models.database import get_db
from patient_lifecycle.models.records import AuditQuery
from patient_lifecycle.models.types import AccessResult
from patient_lifecycle.schemas.api import (
    AllowedTransitionsResponse,
    AuditLogEntryResponse,
    AuditModification,
    AuditPageResponse,
    AuditStatisticsResponse,
    HealthResponse,
    IntegrityResponse,
    PatientCreate,
    PatientResponse,
    PurgeResponse,
    StatusChangeRequest,
    StatusStatisticsResponse,
    StatusTransitionResponse,
    SubjectCount,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------

@router.post("/patients", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
def register_patient(
    request: PatientCreate,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    """Register a patient in the ``new`` status; committed with its access log entry."""
    try:
        patient = services.patients.register(db, mrn=request.mrn)
    except LifecycleError as exc:
        db.rollback()
        services.access.log_access(
            db,
            actor=actor,
            subject=f"mrn:{request.mrn}",
            operation="create",
            data_type="patient_data",
            result=AccessResult.DENIED,
            context=context,
            justification=exc.code.value,
        )
        raise

    services.access.log_access(
        db,
        actor=actor,
        subject=str(patient.id),
        operation="create",
        data_type="patient_data",
        result=AccessResult.GRANTED,
        context=context,
    )
    return PatientResponse.model_validate(patient)


@router.get("/patients/{patient_id}", response_model=PatientResponse)
def get_patient(
    patient_id: UUID,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    patient = services.access.guarded(
        db,
        actor=actor,
        subject=str(patient_id),
        operation="read",
        data_type="patient_data",
        access=lambda: services.patients.get(db, patient_id),
        context=context,
    )
    return PatientResponse.model_validate(patient)


# ---------------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------------

@router.post("/patients/{patient_id}/status", response_model=StatusTransitionResponse)
def change_patient_status(
    patient_id: UUID,
    request: StatusChangeRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    context: dict = Depends(access_context),
):
    """
    Apply a status transition. A successful change is audited by the tracker
    itself; a rejected one is logged here as a denied update.
    """
    try:
        transition = services.tracker.change_status(
            db,
            patient_id,
            request.new_status,
            request.reason,
            actor=request.actor_id,
        )
    except LifecycleError as exc:
        if exc.code is not ErrorCode.AUDIT_WRITE_FAILURE:
            services.access.log_access(
                db,
                actor=request.actor_id,
                subject=str(patient_id),
                operation="update",
                data_type="patient_status",
                result=AccessResult.DENIED,
                context=context,
                justification=exc.code.value,
            )
        raise
    return StatusTransitionResponse.model_validate(transition)


@router.get("/patients/{patient_id}/status/history", response_model=list[StatusTransitionResponse])
def get_status_history(
    patient_id: UUID,
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    history = services.access.guarded(
        db,
        actor=actor,
        subject=str(patient_id),
        operation="read",
        data_type="patient_status",
        access=lambda: services.tracker.get_patient_status_history(db, patient_id, limit),
        context=context,
    )
    return [StatusTransitionResponse.model_validate(t) for t in history]


@router.get("/patients/{patient_id}/status/allowed", response_model=AllowedTransitionsResponse)
def get_allowed_transitions(
    patient_id: UUID,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    def read():
        patient = services.patients.get(db, patient_id)
        return patient.status, services.tracker.allowed_transitions(db, patient_id)

    current, allowed = services.access.guarded(
        db,
        actor=actor,
        subject=str(patient_id),
        operation="read",
        data_type="patient_status",
        access=read,
        context=context,
    )
    return AllowedTransitionsResponse(patient_id=patient_id, current_status=current, allowed=allowed)


@router.get("/status/statistics", response_model=StatusStatisticsResponse)
def get_status_statistics(
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    stats = services.access.guarded(
        db,
        actor=actor,
        subject="system",
        operation="read",
        data_type="patient_status",
        access=lambda: services.tracker.status_statistics(db),
        context=context,
    )
    return StatusStatisticsResponse(
        total_patients=stats.total_patients,
        status_counts=stats.status_counts,
        recent_transitions=[StatusTransitionResponse.model_validate(t) for t in stats.recent_transitions],
        average_days_in_status=stats.average_days_in_status,
    )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@router.get("/audit/logs", response_model=AuditPageResponse)
def search_audit_logs(
    actor_id: str | None = None,
    patient_id: str | None = None,
    operation: str | None = None,
    data_type: str | None = None,
    access_result: AccessResult | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    query = AuditQuery(
        actor=actor_id,
        subject=patient_id,
        operation=operation,
        data_type=data_type,
        access_result=access_result,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        offset=offset,
    )
    page = services.access.guarded(
        db,
        actor=actor,
        subject="system",
        operation="read",
        data_type="audit_log",
        access=lambda: services.store.search(db, query),
        context=context,
    )
    return AuditPageResponse(
        entries=[AuditLogEntryResponse.model_validate(e) for e in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_next=page.has_next,
    )


def _reject_audit_mutation(db, services: Services, actor, context, entry_id: UUID, operation: str, outcome):
    services.access.log_access(
        db,
        actor=actor,
        subject="system",
        operation=operation,
        data_type="audit_log",
        result=AccessResult.DENIED,
        context=context,
        justification=f"{outcome.code.value}: {entry_id}",
    )
    if outcome.code is ErrorCode.NOT_FOUND:
        raise AuditEntryNotFound(entry_id)
    raise ProtectedEntryError(outcome.detail)


@router.patch("/audit/logs/{entry_id}")
def modify_audit_log(
    entry_id: UUID,
    request: AuditModification,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    """Audit entries are immutable; this always answers with an error."""
    outcome = services.store.attempt_modify(db, entry_id, request.changes)
    _reject_audit_mutation(db, services, actor, context, entry_id, "update", outcome)


@router.delete("/audit/logs/{entry_id}")
def delete_audit_log(
    entry_id: UUID,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    """Audit entries are only removed by the retention purge."""
    outcome = services.store.attempt_delete(db, entry_id)
    _reject_audit_mutation(db, services, actor, context, entry_id, "delete", outcome)


@router.get("/audit/logs/{entry_id}/verify", response_model=IntegrityResponse)
def verify_audit_log(
    entry_id: UUID,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    report = services.access.guarded(
        db,
        actor=actor,
        subject="system",
        operation="verify",
        data_type="audit_log",
        access=lambda: services.store.verify_integrity(db, entry_id),
        context=context,
    )
    if report.code is ErrorCode.NOT_FOUND:
        raise AuditEntryNotFound(entry_id)
    return IntegrityResponse(
        entry_id=report.entry_id,
        valid=report.valid,
        code=report.code,
        detail=report.detail,
    )


@router.get("/audit/statistics", response_model=AuditStatisticsResponse)
def get_audit_statistics(
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    stats = services.access.guarded(
        db,
        actor=actor,
        subject="system",
        operation="read",
        data_type="audit_log",
        access=lambda: services.store.statistics(db, from_date, to_date),
        context=context,
    )
    return AuditStatisticsResponse(
        total_logs=stats.total_logs,
        access_attempts=stats.access_attempts,
        denied_accesses=stats.denied_accesses,
        unique_actors=stats.unique_actors,
        most_accessed_subjects=[
            SubjectCount(subject=subject, access_count=n) for subject, n in stats.most_accessed_subjects
        ],
        operation_counts=stats.operation_counts,
    )


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

@router.post("/admin/retention/purge", response_model=PurgeResponse)
def purge_expired_audit_logs(
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    actor: str = Depends(get_actor),
    context: dict = Depends(access_context),
):
    purged = services.access.guarded(
        db,
        actor=actor,
        subject="system",
        operation="delete",
        data_type="audit_log",
        access=lambda: services.retention.purge(db, actor=actor),
        context=context,
    )
    return PurgeResponse(purged=purged, retention_days=services.retention.retention_days)
