"""Wiring of the core services for the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Header, Request

from patient_lifecycle.config import settings
from patient_lifecycle.services.access_logger import AccessLogger
from patient_lifecycle.services.audit_store import AuditLogStore
from patient_lifecycle.services.encryption import EncryptionService
from patient_lifecycle.services.patients import PatientRepository
from patient_lifecycle.services.retention import RetentionManager
from patient_lifecycle.services.status_tracker import StatusTracker


@dataclass
class Services:
    store: AuditLogStore
    patients: PatientRepository
    tracker: StatusTracker
    access: AccessLogger
    retention: RetentionManager


def build_services(
    encryption: EncryptionService | None = None,
    retention_days: int = settings.AUDIT_RETENTION_DAYS,
) -> Services:
    if encryption is None and not settings.PHI_ENCRYPTION_KEY and settings.ENVIRONMENT != "development":
        raise RuntimeError(
            f"PHI_ENCRYPTION_KEY must be set when ENVIRONMENT={settings.ENVIRONMENT}; "
            "audit payloads written under a process-local key are unreadable after a restart"
        )
    store = AuditLogStore(encryption or EncryptionService())
    patients = PatientRepository()
    return Services(
        store=store,
        patients=patients,
        tracker=StatusTracker(store, patients),
        access=AccessLogger(store),
        retention=RetentionManager(store, retention_days),
    )


@lru_cache
def get_services() -> Services:
    """Process-wide services; tests override this dependency."""
    return build_services()


def get_actor(x_actor_id: str = Header("api_user")) -> str:
    return x_actor_id


def access_context(request: Request) -> dict[str, str]:
    context = {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "request_id": request.headers.get("x-request-id"),
        "endpoint": request.url.path,
    }
    return {key: value[:128] for key, value in context.items() if value}
