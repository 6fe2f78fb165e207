"""Retention-window purge of the audit trail."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_lifecycle.config import LEGAL_MINIMUM_RETENTION_DAYS, settings
from patient_lifecycle.errors import AuditWriteFailure
from patient_lifecycle.models.records import NewAuditEntry
from patient_lifecycle.models.types import as_utc, utcnow
from patient_lifecycle.services.audit_store import AuditLogStore

logger = logging.getLogger(__name__)


class RetentionManager:
    def __init__(self, store: AuditLogStore, retention_days: int = settings.AUDIT_RETENTION_DAYS):
        if retention_days < LEGAL_MINIMUM_RETENTION_DAYS:
            raise ValueError(
                f"retention_days={retention_days} is below the legal minimum of "
                f"{LEGAL_MINIMUM_RETENTION_DAYS} days"
            )
        self._store = store
        self.retention_days = retention_days

    def cutoff(self, now: datetime | None = None) -> datetime:
        return as_utc(now or utcnow()) - timedelta(days=self.retention_days)

    def purge(self, db: Session, now: datetime | None = None, *, actor: str = "system") -> int:
        """
        Remove entries older than the retention window as of ``now``.

        Running it again with the same ``now`` purges nothing further. The run
        itself is recorded as an audit entry stamped ``now``, which therefore
        falls inside the window and survives the repeat run.
        ``actor`` names whoever requested the run in that record.
        """
        run_at = as_utc(now) if now else utcnow()
        cutoff = self.cutoff(run_at)
        try:
            purged = self._store.purge_older_than(db, cutoff)
            self._store.append(
                db,
                NewAuditEntry(
                    actor=actor,
                    subject="system",
                    operation="purge_audit_logs",
                    data_type="audit_log",
                    timestamp=run_at,
                    new_values={"purged": purged, "cutoff": cutoff.isoformat()},
                    justification=f"Purged {purged} audit entries older than {self.retention_days} days",
                ),
            )
            db.commit()
        except AuditWriteFailure:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Retention purge failed")
            raise AuditWriteFailure(f"Retention purge failed: {exc}") from exc

        logger.info("Retention purge by %s removed %d entries (cutoff %s)", actor, purged, cutoff.isoformat())
        return purged
