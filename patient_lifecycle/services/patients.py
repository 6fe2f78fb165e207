"""Patient repository: the only code that writes ``patients.status``."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from patient_lifecycle.errors import PatientAlreadyExists, PatientNotFound
from patient_lifecycle.models.patient import Patient
from patient_lifecycle.models.types import PatientStatus, utcnow

logger = logging.getLogger(__name__)


class PatientRepository:
    def get(self, db: Session, patient_id: UUID) -> Patient:
        patient = db.get(Patient, patient_id, populate_existing=True)
        if patient is None:
            raise PatientNotFound(patient_id)
        return patient

    def find_by_mrn(self, db: Session, mrn: str) -> Patient | None:
        return db.scalars(select(Patient).where(Patient.mrn == mrn)).first()

    def register(self, db: Session, *, mrn: str) -> Patient:
        """Create a patient in the ``new`` status. The caller commits."""
        if self.find_by_mrn(db, mrn) is not None:
            raise PatientAlreadyExists(mrn)
        patient = Patient(mrn=mrn, status=PatientStatus.NEW, version=1)
        db.add(patient)
        db.flush()
        logger.info("Registered patient %s (mrn=%s)", patient.id, mrn)
        return patient

    def compare_and_set_status(
        self,
        db: Session,
        patient_id: UUID,
        *,
        expected_status: PatientStatus,
        expected_version: int,
        new_status: PatientStatus,
    ) -> bool:
        """Write ``new_status`` only if the row still holds the expected status/version."""
        result = db.execute(
            update(Patient)
            .where(
                Patient.id == patient_id,
                Patient.status == expected_status,
                Patient.version == expected_version,
            )
            .values(status=new_status, version=Patient.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_by_status(self, db: Session) -> dict[PatientStatus, int]:
        counts = {status: 0 for status in PatientStatus}
        for status, n in db.execute(select(Patient.status, func.count()).group_by(Patient.status)):
            counts[PatientStatus(status)] = n
        return counts
