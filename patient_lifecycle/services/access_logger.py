"""
Access-attempt logging.

Every read/create/update/delete/export of patient data is recorded here,
whatever its outcome, and the entry is committed before control returns to
the caller. If the entry cannot be written the caller gets an
``AuditWriteFailure`` instead of its data: an unlogged access must not
succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from patient_lifecycle.config import settings
from patient_lifecycle.errors import AuditWriteFailure, LifecycleError
from patient_lifecycle.models.records import AuditLogEntry, NewAuditEntry
from patient_lifecycle.models.types import AccessResult, utcnow
from patient_lifecycle.schemas.access import ACCESS_CONTEXT_SCHEMA
from patient_lifecycle.services.audit_store import AuditLogStore
from patient_lifecycle.services.validation import require_valid

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PartialAccess(Generic[T]):
    """Returned by an access callable that could only serve part of a request."""

    value: T
    withheld: list[str] = field(default_factory=list)


class AccessLogger:
    def __init__(
        self,
        store: AuditLogStore,
        denied_threshold: int = settings.SUSPICIOUS_DENIED_THRESHOLD,
        window: timedelta = timedelta(hours=1),
    ):
        self._store = store
        self._denied_threshold = denied_threshold
        self._window = window

    def log_access(
        self,
        db: Session,
        *,
        actor: str,
        subject: str,
        operation: str,
        data_type: str,
        result: AccessResult | str,
        context: dict[str, Any] | None = None,
        justification: str | None = None,
    ) -> AuditLogEntry:
        """Record one access attempt and commit it before returning."""
        if context is not None:
            require_valid(context, ACCESS_CONTEXT_SCHEMA, "access context")

        try:
            entry = self._store.append(
                db,
                NewAuditEntry(
                    actor=actor,
                    subject=str(subject),
                    operation=operation,
                    data_type=data_type,
                    access_result=AccessResult(result),
                    justification=justification,
                    context=context,
                ),
            )
            if entry.access_result is AccessResult.DENIED:
                self._check_denied_rate(db, actor)
            db.commit()
        except AuditWriteFailure:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Access log commit failed for %s %s", actor, operation)
            raise AuditWriteFailure(f"Access log could not be committed: {exc}") from exc
        return entry

    def guarded(
        self,
        db: Session,
        *,
        actor: str,
        subject: str,
        operation: str,
        data_type: str,
        access: Callable[[], T],
        context: dict[str, Any] | None = None,
    ) -> T:
        """
        Run ``access`` and log its outcome before handing back the value.

        Any exception from ``access`` is logged as a denied attempt and
        re-raised. A ``PartialAccess`` return value is logged as partial.
        """
        try:
            value = access()
        except Exception as exc:
            db.rollback()
            reason = exc.code.value if isinstance(exc, LifecycleError) else type(exc).__name__
            self.log_access(
                db,
                actor=actor,
                subject=subject,
                operation=operation,
                data_type=data_type,
                result=AccessResult.DENIED,
                context=context,
                justification=reason,
            )
            raise

        if isinstance(value, PartialAccess):
            result = AccessResult.PARTIAL
            justification = "withheld: " + ", ".join(value.withheld) if value.withheld else None
        else:
            result = AccessResult.GRANTED
            justification = None
        self.log_access(
            db,
            actor=actor,
            subject=subject,
            operation=operation,
            data_type=data_type,
            result=result,
            context=context,
            justification=justification,
        )
        return value

    def _check_denied_rate(self, db: Session, actor: str) -> None:
        denied = self._store.count_recent(
            db,
            actor=actor,
            since=utcnow() - self._window,
            access_result=AccessResult.DENIED,
        )
        if denied <= self._denied_threshold:
            return
        logger.warning("SECURITY ALERT: %s had %d denied accesses within %s", actor, denied, self._window)
        self._store.append(
            db,
            NewAuditEntry(
                actor="system",
                subject=actor,
                operation="security_alert",
                data_type="security",
                access_result=AccessResult.DENIED,
                new_values={
                    "alert_type": "excessive_failed_attempts",
                    "denied_attempts": denied,
                    "window_seconds": int(self._window.total_seconds()),
                },
                justification="Security alert: excessive_failed_attempts",
            ),
        )
