"""
Typed error taxonomy for the lifecycle and audit core.

Every error carries an ``ErrorCode`` so callers (and the HTTP layer) can
branch on kind instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    PATIENT_NOT_FOUND = "patient_not_found"
    INVALID_TRANSITION = "invalid_transition"
    REASON_REQUIRED = "reason_required"
    STATUS_CONFLICT = "status_conflict"
    AUDIT_WRITE_FAILURE = "audit_write_failure"
    PROTECTED_ENTRY = "protected_entry"
    INTEGRITY_VIOLATION = "integrity_violation"
    NOT_FOUND = "not_found"
    PATIENT_EXISTS = "patient_exists"


class LifecycleError(Exception):
    code: ErrorCode

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PatientNotFound(LifecycleError):
    code = ErrorCode.PATIENT_NOT_FOUND

    def __init__(self, patient_id):
        super().__init__(f"Patient {patient_id} not found")
        self.patient_id = patient_id


class InvalidTransition(LifecycleError):
    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, from_status, to_status):
        super().__init__(
            f"Status transition from {from_status.value} to {to_status.value} is not allowed"
        )
        self.from_status = from_status
        self.to_status = to_status


class ReasonRequired(LifecycleError):
    code = ErrorCode.REASON_REQUIRED

    def __init__(self, from_status, to_status):
        super().__init__(
            f"Status transition from {from_status.value} to {to_status.value} requires a reason"
        )
        self.from_status = from_status
        self.to_status = to_status


class StatusConflict(LifecycleError):
    """The patient's status changed between validation and write."""

    code = ErrorCode.STATUS_CONFLICT

    def __init__(self, patient_id, expected_status):
        super().__init__(
            f"Patient {patient_id} is no longer in status {expected_status.value}"
        )
        self.patient_id = patient_id
        self.expected_status = expected_status


class AuditWriteFailure(LifecycleError):
    code = ErrorCode.AUDIT_WRITE_FAILURE


class AuditEntryNotFound(LifecycleError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, entry_id):
        super().__init__(f"Audit log entry {entry_id} not found")
        self.entry_id = entry_id


class ProtectedEntryError(LifecycleError):
    code = ErrorCode.PROTECTED_ENTRY


class PatientAlreadyExists(LifecycleError):
    code = ErrorCode.PATIENT_EXISTS

    def __init__(self, mrn: str):
        super().__init__(f"A patient with MRN {mrn} already exists")
        self.mrn = mrn
