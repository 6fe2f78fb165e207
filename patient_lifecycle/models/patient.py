"""
Persistence models for the patient lifecycle and its audit trail.

- Patient rows carry the current lifecycle status plus a version counter
  used for compare-and-swap status writes.
- Status transitions and audit log entries are append-only; the ORM refuses
  to update or delete them (see ``_refuse_mutation``). Only the retention
  purge removes rows, through a bulk DELETE that bypasses mapper events.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB

from patient_lifecycle.errors import ProtectedEntryError
from patient_lifecycle.models.database import Base
from patient_lifecycle.models.types import AccessResult, PatientStatus, utcnow


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


status_enum = Enum(PatientStatus, name="patient_status_enum", values_callable=_enum_values)


# ---------------------------------------------------------------------------
# Patient – identity plus current lifecycle status
# ---------------------------------------------------------------------------
class Patient(Base):
    __tablename__ = "patients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    mrn = Column(String(64), unique=True, nullable=False, comment="Medical Record Number")
    status = Column(status_enum, default=PatientStatus.NEW, nullable=False)
    version = Column(Integer, default=1, nullable=False, comment="Bumped on every status write")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_patients_status", "status"),)


# ---------------------------------------------------------------------------
# Status transition – one row per successful lifecycle change
# ---------------------------------------------------------------------------
class StatusTransitionLog(Base):
    __tablename__ = "status_transitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, nullable=False)
    from_status = Column(status_enum, nullable=False)
    to_status = Column(status_enum, nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(128), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_status_transitions_patient_ts", "patient_id", "timestamp"),
    )


# ---------------------------------------------------------------------------
# Audit Log – immutable, checksummed compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    subject = Column(String(128), nullable=False, comment="Patient id, or 'system'")
    operation = Column(String(64), nullable=False, comment="read | create | update | delete | export | ...")
    data_type = Column(String(64), nullable=False)
    access_result = Column(
        Enum(AccessResult, name="access_result_enum", values_callable=_enum_values),
        nullable=False,
    )
    timestamp = Column(DateTime(timezone=True), nullable=False)
    encrypted_old_values = Column(Text, nullable=True, comment="Fernet-encrypted JSON")
    encrypted_new_values = Column(Text, nullable=True, comment="Fernet-encrypted JSON")
    justification = Column(Text, nullable=True)
    context = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    checksum = Column(String(64), nullable=False)
    protected = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_actor", "actor"),
        Index("ix_audit_subject", "subject"),
    )


def _refuse_mutation(verb):
    def listener(mapper, connection, target):
        raise ProtectedEntryError(
            f"{type(target).__name__} {target.id} is protected from {verb}"
        )

    return listener


for _model in (AuditLog, StatusTransitionLog):
    event.listen(_model, "before_update", _refuse_mutation("modification"))
    event.listen(_model, "before_delete", _refuse_mutation("deletion"))
