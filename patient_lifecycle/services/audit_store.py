"""
Append-only audit log store.

Every entry is checksummed at write time, marked protected, and never
updated afterwards. Reads hand back frozen copies with payloads decrypted.
Only ``purge_older_than`` removes rows, and only rows strictly older than
the cutoff it is given.

Methods take the caller's ``Session`` and flush without committing, so an
append can share a transaction with the write it documents.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_lifecycle.errors import AuditEntryNotFound, AuditWriteFailure, ErrorCode
from patient_lifecycle.models.patient import AuditLog, StatusTransitionLog
from patient_lifecycle.models.records import (
    AttemptResult,
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    AuditStatistics,
    IntegrityReport,
    NewAuditEntry,
    StatusHistoryQuery,
    StatusTransition,
)
from patient_lifecycle.models.types import AccessResult, PatientStatus, as_utc, utcnow
from patient_lifecycle.services.encryption import EncryptionService, InvalidToken
from patient_lifecycle.services.integrity import compute_checksum, normalize_payload

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
ACCESS_OPERATIONS = ("read", "create", "update", "delete")
UNDECRYPTABLE = {"error": "payload cannot be decrypted"}


def _check_page(limit: int, offset: int) -> None:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")


class AuditLogStore:
    """Writes, queries and verifies the protected audit trail."""

    def __init__(self, encryption: EncryptionService | None = None):
        self._encryption = encryption or EncryptionService()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, db: Session, entry: NewAuditEntry) -> AuditLogEntry:
        """Store ``entry`` and return the stored, checksummed copy."""
        entry_id = uuid.uuid4()
        timestamp = as_utc(entry.timestamp) if entry.timestamp else utcnow()
        access_result = AccessResult(entry.access_result)
        old_values = normalize_payload(entry.old_values)
        new_values = normalize_payload(entry.new_values)
        context = normalize_payload(entry.context)
        encrypted_old_values = self._encryption.encrypt_json(old_values)
        encrypted_new_values = self._encryption.encrypt_json(new_values)

        checksum = compute_checksum(
            entry_id=entry_id,
            actor=entry.actor,
            subject=entry.subject,
            operation=entry.operation,
            data_type=entry.data_type,
            access_result=access_result.value,
            timestamp=timestamp,
            encrypted_old_values=encrypted_old_values,
            encrypted_new_values=encrypted_new_values,
            justification=entry.justification,
            context=context,
        )
        row = AuditLog(
            id=entry_id,
            actor=entry.actor,
            subject=entry.subject,
            operation=entry.operation,
            data_type=entry.data_type,
            access_result=access_result,
            timestamp=timestamp,
            encrypted_old_values=encrypted_old_values,
            encrypted_new_values=encrypted_new_values,
            justification=entry.justification,
            context=context,
            checksum=checksum,
            protected=True,
        )
        try:
            db.add(row)
            db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Audit append failed for %s %s", entry.actor, entry.operation)
            raise AuditWriteFailure(f"Audit append failed: {exc}") from exc

        logger.info(
            "AUDIT: %s %s %s/%s -> %s",
            entry.actor,
            entry.operation,
            entry.data_type,
            entry.subject,
            access_result.value,
        )
        return AuditLogEntry(
            id=entry_id,
            actor=entry.actor,
            subject=entry.subject,
            operation=entry.operation,
            data_type=entry.data_type,
            access_result=access_result,
            timestamp=timestamp,
            checksum=checksum,
            protected=True,
            old_values=old_values,
            new_values=new_values,
            justification=entry.justification,
            context=context,
        )

    def record_transition(
        self,
        db: Session,
        *,
        patient_id: UUID,
        from_status: PatientStatus,
        to_status: PatientStatus,
        reason: str | None,
        changed_by: str,
        timestamp: datetime,
    ) -> StatusTransition:
        """Write a status transition and its companion audit entry."""
        transition = StatusTransition(
            id=uuid.uuid4(),
            patient_id=patient_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            changed_by=changed_by,
            timestamp=as_utc(timestamp),
        )
        try:
            db.add(
                StatusTransitionLog(
                    id=transition.id,
                    patient_id=patient_id,
                    from_status=from_status,
                    to_status=to_status,
                    reason=reason,
                    changed_by=changed_by,
                    timestamp=transition.timestamp,
                )
            )
            db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Status transition write failed for patient %s", patient_id)
            raise AuditWriteFailure(f"Status transition write failed: {exc}") from exc

        self.append(
            db,
            NewAuditEntry(
                actor=changed_by,
                subject=str(patient_id),
                operation="update",
                data_type="patient_status",
                timestamp=transition.timestamp,
                old_values={"status": from_status.value},
                new_values={"status": to_status.value, "transition_id": str(transition.id)},
                justification=reason,
            ),
        )
        return transition

    # ------------------------------------------------------------------
    # Protection: entries are never modified or deleted on request
    # ------------------------------------------------------------------

    def attempt_modify(self, db: Session, entry_id: UUID, changes: dict[str, Any]) -> AttemptResult:
        row = db.get(AuditLog, entry_id)
        if row is None:
            return AttemptResult(False, ErrorCode.NOT_FOUND, "Audit log entry not found")
        logger.info("Rejected modification of audit entry %s (fields: %s)", entry_id, sorted(changes))
        return AttemptResult(
            False,
            ErrorCode.PROTECTED_ENTRY,
            "Audit log entries are protected from modification during the retention window",
        )

    def attempt_delete(self, db: Session, entry_id: UUID) -> AttemptResult:
        row = db.get(AuditLog, entry_id)
        if row is None:
            return AttemptResult(False, ErrorCode.NOT_FOUND, "Audit log entry not found")
        logger.info("Rejected deletion of audit entry %s", entry_id)
        return AttemptResult(
            False,
            ErrorCode.PROTECTED_ENTRY,
            "Audit log entries are protected from deletion during the retention window",
        )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self, db: Session, entry_id: UUID) -> IntegrityReport:
        """Recompute an entry's checksum and compare it to the stored one."""
        row = db.get(AuditLog, entry_id, populate_existing=True)
        if row is None:
            return IntegrityReport(entry_id, False, ErrorCode.NOT_FOUND, "Audit log entry not found")

        expected = compute_checksum(
            entry_id=row.id,
            actor=row.actor,
            subject=row.subject,
            operation=row.operation,
            data_type=row.data_type,
            access_result=AccessResult(row.access_result).value,
            timestamp=row.timestamp,
            encrypted_old_values=row.encrypted_old_values,
            encrypted_new_values=row.encrypted_new_values,
            justification=row.justification,
            context=row.context,
        )
        if expected != row.checksum:
            return self._violation(entry_id, "Checksum mismatch - entry may have been tampered with")
        if not row.protected:
            return self._violation(entry_id, "Protection flag was cleared")
        return IntegrityReport(entry_id, True)

    @staticmethod
    def _violation(entry_id: UUID, detail: str) -> IntegrityReport:
        logger.warning("INTEGRITY VIOLATION: audit entry %s: %s", entry_id, detail)
        return IntegrityReport(entry_id, False, ErrorCode.INTEGRITY_VIOLATION, detail)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, db: Session, entry_id: UUID) -> AuditLogEntry:
        row = db.get(AuditLog, entry_id)
        if row is None:
            raise AuditEntryNotFound(entry_id)
        return self._to_entry(row)

    def search(self, db: Session, query: AuditQuery | None = None) -> AuditPage:
        """Filtered page of entries, newest first."""
        query = query or AuditQuery()
        _check_page(query.limit, query.offset)

        stmt = self._filtered(select(AuditLog), query)
        total = db.scalar(select(func.count()).select_from(stmt.subquery()))
        rows = db.scalars(
            stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        ).all()
        return AuditPage(
            entries=[self._to_entry(row) for row in rows],
            total=total or 0,
            limit=query.limit,
            offset=query.offset,
        )

    def statistics(
        self,
        db: Session,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditStatistics:
        scoped = self._filtered(select(AuditLog), AuditQuery(from_date=from_date, to_date=to_date)).subquery()

        total = db.scalar(select(func.count()).select_from(scoped)) or 0
        access_attempts = db.scalar(
            select(func.count()).select_from(scoped).where(scoped.c.operation.in_(ACCESS_OPERATIONS))
        ) or 0
        denied = db.scalar(
            select(func.count()).select_from(scoped).where(scoped.c.access_result == AccessResult.DENIED)
        ) or 0
        unique_actors = db.scalar(select(func.count(func.distinct(scoped.c.actor)))) or 0

        subject_count = func.count().label("n")
        top_subjects = db.execute(
            select(scoped.c.subject, subject_count)
            .where(scoped.c.subject != "system")
            .group_by(scoped.c.subject)
            .order_by(subject_count.desc(), scoped.c.subject)
            .limit(10)
        ).all()
        operation_counts = db.execute(
            select(scoped.c.operation, func.count()).group_by(scoped.c.operation)
        ).all()

        return AuditStatistics(
            total_logs=total,
            access_attempts=access_attempts,
            denied_accesses=denied,
            unique_actors=unique_actors,
            most_accessed_subjects=[(subject, n) for subject, n in top_subjects],
            operation_counts={operation: n for operation, n in operation_counts},
        )

    def count_recent(
        self,
        db: Session,
        *,
        actor: str,
        since: datetime,
        access_result: AccessResult | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(AuditLog).where(
            AuditLog.actor == actor, AuditLog.timestamp >= as_utc(since)
        )
        if access_result is not None:
            stmt = stmt.where(AuditLog.access_result == access_result)
        return db.scalar(stmt) or 0

    @staticmethod
    def _filtered(stmt, query: AuditQuery):
        if query.actor is not None:
            stmt = stmt.where(AuditLog.actor == query.actor)
        if query.subject is not None:
            stmt = stmt.where(AuditLog.subject == query.subject)
        if query.operation is not None:
            stmt = stmt.where(AuditLog.operation == query.operation)
        if query.data_type is not None:
            stmt = stmt.where(AuditLog.data_type == query.data_type)
        if query.access_result is not None:
            stmt = stmt.where(AuditLog.access_result == AccessResult(query.access_result))
        if query.from_date is not None:
            stmt = stmt.where(AuditLog.timestamp >= as_utc(query.from_date))
        if query.to_date is not None:
            stmt = stmt.where(AuditLog.timestamp <= as_utc(query.to_date))
        return stmt

    def _to_entry(self, row: AuditLog) -> AuditLogEntry:
        return AuditLogEntry(
            id=row.id,
            actor=row.actor,
            subject=row.subject,
            operation=row.operation,
            data_type=row.data_type,
            access_result=AccessResult(row.access_result),
            timestamp=as_utc(row.timestamp),
            checksum=row.checksum,
            protected=row.protected,
            old_values=self._read_payload(row.id, row.encrypted_old_values),
            new_values=self._read_payload(row.id, row.encrypted_new_values),
            justification=row.justification,
            context=row.context,
        )

    def _read_payload(self, entry_id: UUID, ciphertext: str | None) -> Any:
        try:
            return self._encryption.decrypt_json(ciphertext)
        except (InvalidToken, ValueError):
            logger.warning("Could not decrypt payload of audit entry %s", entry_id)
            return dict(UNDECRYPTABLE)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def latest_transition_time(self, db: Session, patient_id: UUID) -> datetime | None:
        latest = db.scalar(
            select(func.max(StatusTransitionLog.timestamp)).where(
                StatusTransitionLog.patient_id == patient_id
            )
        )
        return as_utc(latest) if latest is not None else None

    def search_transitions(self, db: Session, query: StatusHistoryQuery) -> list[StatusTransition]:
        """Transitions matching ``query``, most recent first."""
        _check_page(query.limit, query.offset)
        stmt = select(StatusTransitionLog)
        if query.patient_id is not None:
            stmt = stmt.where(StatusTransitionLog.patient_id == query.patient_id)
        if query.changed_by is not None:
            stmt = stmt.where(StatusTransitionLog.changed_by == query.changed_by)
        if query.to_status is not None:
            stmt = stmt.where(StatusTransitionLog.to_status == PatientStatus(query.to_status))
        if query.from_date is not None:
            stmt = stmt.where(StatusTransitionLog.timestamp >= as_utc(query.from_date))
        if query.to_date is not None:
            stmt = stmt.where(StatusTransitionLog.timestamp <= as_utc(query.to_date))

        rows = db.scalars(
            stmt.order_by(StatusTransitionLog.timestamp.desc(), StatusTransitionLog.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        ).all()
        return [
            StatusTransition(
                id=row.id,
                patient_id=row.patient_id,
                from_status=PatientStatus(row.from_status),
                to_status=PatientStatus(row.to_status),
                reason=row.reason,
                changed_by=row.changed_by,
                timestamp=as_utc(row.timestamp),
            )
            for row in rows
        ]

    def history_for_patient(self, db: Session, patient_id: UUID, limit: int = 50) -> list[StatusTransition]:
        return self.search_transitions(db, StatusHistoryQuery(patient_id=patient_id, limit=limit))

    def average_days_in_status(self, db: Session) -> dict[PatientStatus, float]:
        """
        Mean number of days patients stayed in each status.

        A stay runs from the transition into a status to the patient's next
        transition, so a patient's current status is not counted. Statuses
        with no completed stay report 0.0.
        """
        rows = db.execute(
            select(
                StatusTransitionLog.patient_id,
                StatusTransitionLog.to_status,
                StatusTransitionLog.timestamp,
            ).order_by(StatusTransitionLog.patient_id, StatusTransitionLog.timestamp)
        ).all()

        stays: dict[PatientStatus, list[float]] = {status: [] for status in PatientStatus}
        previous = None
        for patient_id, to_status, timestamp in rows:
            timestamp = as_utc(timestamp)
            if previous is not None and previous[0] == patient_id:
                _, entered_status, entered_at = previous
                stays[PatientStatus(entered_status)].append((timestamp - entered_at).total_seconds() / 86400)
            previous = (patient_id, to_status, timestamp)

        return {status: (sum(days) / len(days) if days else 0.0) for status, days in stays.items()}

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_older_than(self, db: Session, cutoff: datetime) -> int:
        """Delete entries (and transitions) with a timestamp strictly before ``cutoff``.

        Returns the number of audit entries removed. Bulk deletes do not fire
        the mapper-level guards, which is what keeps this the only removal path.
        """
        cutoff = as_utc(cutoff)
        purged = db.execute(
            delete(AuditLog)
            .where(AuditLog.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
        transitions = db.execute(
            delete(StatusTransitionLog)
            .where(StatusTransitionLog.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        ).rowcount
        logger.info(
            "Purged %d audit entries and %d status transitions older than %s",
            purged,
            transitions,
            cutoff.isoformat(),
        )
        return purged
