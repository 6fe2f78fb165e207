"""
Patient status lifecycle orchestration.

A status change is validated against the transition policy and then applied
as one unit: the compare-and-swap on the patient row and the transition
record (with its audit entry) commit together or not at all.

Changes are serialized per patient in two layers:
- an in-process lock per patient id, so concurrent callers in one process
  queue up and each validates against the status left by the previous one;
- a compare-and-swap on (status, version), so a writer in another process
  that got there first turns this write into a ``StatusConflict``.
Conflicts are not retried here; retrying is the caller's decision.
"""

from __future__ import annotations

import logging
import threading
import weakref
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_lifecycle.errors import (
    AuditWriteFailure,
    InvalidTransition,
    ReasonRequired,
    StatusConflict,
)
from patient_lifecycle.models.records import StatusHistoryQuery, StatusStatistics, StatusTransition
from patient_lifecycle.models.types import PatientStatus, as_utc, utcnow
from patient_lifecycle.services import policy
from patient_lifecycle.services.audit_store import AuditLogStore
from patient_lifecycle.services.patients import PatientRepository

logger = logging.getLogger(__name__)


def _clean_reason(reason: str | None) -> str | None:
    if reason is None or not reason.strip():
        return None
    return reason.strip()


class StatusTracker:
    def __init__(
        self,
        store: AuditLogStore,
        patients: PatientRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._patients = patients or PatientRepository()
        self._clock = clock
        # Entries vanish once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[UUID, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, patient_id: UUID) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(patient_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[patient_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def change_status(
        self,
        db: Session,
        patient_id: UUID,
        new_status: PatientStatus | str,
        reason: str | None = None,
        *,
        actor: str,
    ) -> StatusTransition:
        """
        Move a patient to ``new_status`` and record the transition.

        Raises PatientNotFound, InvalidTransition, ReasonRequired,
        StatusConflict or AuditWriteFailure; on any of them nothing is written.
        """
        new_status = PatientStatus(new_status)
        reason = _clean_reason(reason)

        with self._lock_for(patient_id):
            try:
                transition = self._apply(db, patient_id, new_status, reason, actor)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Status change for patient %s failed to commit", patient_id)
                raise AuditWriteFailure(f"Status change could not be recorded: {exc}") from exc
            except Exception:
                db.rollback()
                raise

        logger.info(
            "Patient %s status %s -> %s by %s",
            patient_id,
            transition.from_status.value,
            transition.to_status.value,
            actor,
        )
        return transition

    def _apply(
        self,
        db: Session,
        patient_id: UUID,
        new_status: PatientStatus,
        reason: str | None,
        actor: str,
    ) -> StatusTransition:
        patient = self._patients.get(db, patient_id)
        from_status = PatientStatus(patient.status)

        decision = policy.validate(from_status, new_status)
        if not decision.allowed:
            logger.info("Rejected transition %s -> %s for patient %s", from_status.value, new_status.value, patient_id)
            raise InvalidTransition(from_status, new_status)
        if decision.reason_required and reason is None:
            raise ReasonRequired(from_status, new_status)

        timestamp = self._next_timestamp(db, patient_id)
        swapped = self._patients.compare_and_set_status(
            db,
            patient_id,
            expected_status=from_status,
            expected_version=patient.version,
            new_status=new_status,
        )
        if not swapped:
            raise StatusConflict(patient_id, from_status)

        return self._store.record_transition(
            db,
            patient_id=patient_id,
            from_status=from_status,
            to_status=new_status,
            reason=reason,
            changed_by=actor,
            timestamp=timestamp,
        )

    def _next_timestamp(self, db: Session, patient_id: UUID) -> datetime:
        now = as_utc(self._clock())
        latest = self._store.latest_transition_time(db, patient_id)
        if latest is not None and now <= latest:
            return latest + timedelta(microseconds=1)
        return now

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_patient_status_history(self, db: Session, patient_id: UUID, limit: int = 50) -> list[StatusTransition]:
        """Transitions for one patient, most recent first."""
        self._patients.get(db, patient_id)
        return self._store.history_for_patient(db, patient_id, limit)

    def get_status_history(self, db: Session, query: StatusHistoryQuery) -> list[StatusTransition]:
        return self._store.search_transitions(db, query)

    def allowed_transitions(self, db: Session, patient_id: UUID) -> list[PatientStatus]:
        patient = self._patients.get(db, patient_id)
        return policy.allowed_transitions(patient.status)

    def status_statistics(self, db: Session) -> StatusStatistics:
        counts = self._patients.count_by_status(db)
        return StatusStatistics(
            total_patients=sum(counts.values()),
            status_counts=counts,
            recent_transitions=self._store.search_transitions(db, StatusHistoryQuery(limit=10)),
            average_days_in_status=self._store.average_days_in_status(db),
        )
