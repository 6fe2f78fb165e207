"""Tests for the append-only audit store: protection, integrity, queries, purge."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from patient_lifecycle.api.dependencies import build_services
from patient_lifecycle.config import settings
from patient_lifecycle.errors import AuditEntryNotFound, ErrorCode, ProtectedEntryError
from patient_lifecycle.models.patient import AuditLog
from patient_lifecycle.models.records import AuditQuery, NewAuditEntry
from patient_lifecycle.models.types import AccessResult
from patient_lifecycle.services.audit_store import AuditLogStore
from patient_lifecycle.services.encryption import EncryptionService

NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)


def _entry(**overrides):
    fields = dict(
        actor="dr.silva",
        subject="patient-1",
        operation="read",
        data_type="patient_data",
        access_result=AccessResult.GRANTED,
    )
    fields.update(overrides)
    return NewAuditEntry(**fields)


def _append(db, store, **overrides):
    entry = store.append(db, _entry(**overrides))
    db.commit()
    return entry


def _tamper(db, entry_id, **values):
    """Change a stored row underneath the ORM, the way a rogue DB user would."""
    table = AuditLog.__table__
    db.execute(table.update().where(table.c.id == entry_id).values(**values))
    db.commit()


# ---------------------------------------------------------------------------
# Append & protection
# ---------------------------------------------------------------------------

def test_append_returns_protected_checksummed_entry(db, services):
    entry = _append(db, services.store, old_values={"status": "new"}, new_values={"status": "active"})

    assert entry.protected
    assert len(entry.checksum) == 64
    stored = services.store.get(db, entry.id)
    assert stored.old_values == {"status": "new"}
    assert stored.new_values == {"status": "active"}
    assert stored.checksum == entry.checksum


def test_payload_is_encrypted_at_rest(db, services):
    entry = _append(db, services.store, new_values={"diagnosis": "hypertension"})

    row = db.get(AuditLog, entry.id)
    assert row.encrypted_new_values is not None
    assert "hypertension" not in row.encrypted_new_values


@pytest.mark.parametrize("changes", [{"actor": "mallory"}, {"access_result": "granted"}, {}])
def test_modify_attempt_is_refused_and_entry_unchanged(db, services, changes):
    entry = _append(db, services.store, access_result=AccessResult.DENIED)

    outcome = services.store.attempt_modify(db, entry.id, changes)

    assert not outcome.success
    assert outcome.code is ErrorCode.PROTECTED_ENTRY
    assert "protected from modification" in outcome.detail
    assert services.store.get(db, entry.id) == entry


def test_delete_attempt_is_refused_and_entry_remains(db, services):
    entry = _append(db, services.store)

    outcome = services.store.attempt_delete(db, entry.id)

    assert not outcome.success
    assert outcome.code is ErrorCode.PROTECTED_ENTRY
    assert "protected from deletion" in outcome.detail
    assert services.store.get(db, entry.id) == entry


def test_attempts_on_missing_entry_report_not_found(db, services):
    missing = uuid.uuid4()

    assert services.store.attempt_modify(db, missing, {"actor": "x"}).code is ErrorCode.NOT_FOUND
    assert services.store.attempt_delete(db, missing).code is ErrorCode.NOT_FOUND
    with pytest.raises(AuditEntryNotFound):
        services.store.get(db, missing)


def test_orm_update_of_entry_is_blocked(db, services):
    entry = _append(db, services.store)
    row = db.get(AuditLog, entry.id)
    row.actor = "mallory"

    with pytest.raises(ProtectedEntryError):
        db.flush()
    db.rollback()

    assert services.store.get(db, entry.id).actor == "dr.silva"


def test_orm_delete_of_entry_is_blocked(db, services):
    entry = _append(db, services.store)
    db.delete(db.get(AuditLog, entry.id))

    with pytest.raises(ProtectedEntryError):
        db.flush()
    db.rollback()

    assert services.store.get(db, entry.id).id == entry.id


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

def test_untouched_entry_verifies(db, services):
    entry = _append(db, services.store, new_values={"fields": ["name", "dob"]}, justification="chart review")

    report = services.store.verify_integrity(db, entry.id)

    assert report.valid
    assert report.code is None


@pytest.mark.parametrize(
    "values",
    [
        {"actor": "mallory"},
        {"subject": "patient-2"},
        {"operation": "delete"},
        {"access_result": AccessResult.DENIED},
        {"justification": "nothing to see"},
        {"timestamp": NOW - timedelta(days=1)},
        {"checksum": "0" * 64},
        {"context": {"ip_address": "203.0.113.9"}},
    ],
)
def test_tampered_field_fails_verification(db, services, values):
    entry = _append(db, services.store, timestamp=NOW, context={"ip_address": "10.0.0.12"})

    _tamper(db, entry.id, **values)
    report = services.store.verify_integrity(db, entry.id)

    assert not report.valid
    assert report.code is ErrorCode.INTEGRITY_VIOLATION
    assert "Checksum mismatch" in report.detail


def test_swapped_payload_fails_verification(db, services):
    entry = _append(db, services.store, new_values={"status": "active"})
    forged = services.store._encryption.encrypt_json({"status": "discharged"})

    _tamper(db, entry.id, encrypted_new_values=forged)
    report = services.store.verify_integrity(db, entry.id)

    assert not report.valid
    assert report.code is ErrorCode.INTEGRITY_VIOLATION


def test_unreadable_payload_fails_verification(db, services):
    entry = _append(db, services.store, new_values={"status": "active"})

    _tamper(db, entry.id, encrypted_new_values="not-a-fernet-token")
    report = services.store.verify_integrity(db, entry.id)

    assert not report.valid
    assert "Checksum mismatch" in report.detail
    assert services.store.get(db, entry.id).new_values == {"error": "payload cannot be decrypted"}


def test_entry_verifies_under_a_different_key(db, services):
    entry = _append(db, services.store, old_values={"status": "new"}, new_values={"status": "active"})
    restarted = AuditLogStore(EncryptionService(Fernet.generate_key()))

    report = restarted.verify_integrity(db, entry.id)

    assert report.valid
    assert restarted.get(db, entry.id).new_values == {"error": "payload cannot be decrypted"}


def test_services_refuse_missing_key_outside_development(monkeypatch):
    monkeypatch.setattr(settings, "PHI_ENCRYPTION_KEY", "")
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")

    with pytest.raises(RuntimeError):
        build_services()

    monkeypatch.setattr(settings, "ENVIRONMENT", "development")
    assert build_services().store is not None


def test_cleared_protection_flag_fails_verification(db, services):
    entry = _append(db, services.store)

    _tamper(db, entry.id, protected=False)
    report = services.store.verify_integrity(db, entry.id)

    assert not report.valid
    assert report.detail == "Protection flag was cleared"


def test_verify_missing_entry(db, services):
    report = services.store.verify_integrity(db, uuid.uuid4())

    assert not report.valid
    assert report.code is ErrorCode.NOT_FOUND


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@pytest.fixture
def populated(db, services):
    store = services.store
    entries = [
        store.append(db, _entry(actor="dr.silva", subject="p1", timestamp=NOW - timedelta(hours=5))),
        store.append(db, _entry(actor="dr.silva", subject="p2", operation="update", timestamp=NOW - timedelta(hours=4))),
        store.append(db, _entry(actor="nurse.ana", subject="p1", access_result=AccessResult.DENIED, timestamp=NOW - timedelta(hours=3))),
        store.append(db, _entry(actor="nurse.ana", subject="p1", operation="export", data_type="document", timestamp=NOW - timedelta(hours=2))),
        store.append(db, _entry(actor="system", subject="system", operation="security_alert", data_type="security", timestamp=NOW - timedelta(hours=1))),
    ]
    db.commit()
    return entries


def test_search_returns_newest_first(db, services, populated):
    page = services.store.search(db, AuditQuery())

    assert page.total == len(populated)
    assert [e.id for e in page.entries] == [e.id for e in reversed(populated)]
    assert not page.has_next


@pytest.mark.parametrize(
    "query,expected_indexes",
    [
        (AuditQuery(actor="dr.silva"), [1, 0]),
        (AuditQuery(subject="p1"), [3, 2, 0]),
        (AuditQuery(operation="update"), [1]),
        (AuditQuery(data_type="document"), [3]),
        (AuditQuery(access_result=AccessResult.DENIED), [2]),
        (AuditQuery(from_date=NOW - timedelta(hours=3)), [4, 3, 2]),
        (AuditQuery(to_date=NOW - timedelta(hours=4)), [1, 0]),
        (AuditQuery(actor="nurse.ana", subject="p1", operation="read"), [2]),
    ],
)
def test_search_filters(db, services, populated, query, expected_indexes):
    page = services.store.search(db, query)

    assert [e.id for e in page.entries] == [populated[i].id for i in expected_indexes]
    assert page.total == len(expected_indexes)


def test_search_paginates(db, services, populated):
    first = services.store.search(db, AuditQuery(limit=2))
    second = services.store.search(db, AuditQuery(limit=2, offset=2))
    last = services.store.search(db, AuditQuery(limit=2, offset=4))

    assert first.has_next and second.has_next and not last.has_next
    seen = [e.id for page in (first, second, last) for e in page.entries]
    assert seen == [e.id for e in reversed(populated)]


@pytest.mark.parametrize("limit,offset", [(0, 0), (1001, 0), (10, -1)])
def test_search_rejects_bad_pages(db, services, limit, offset):
    with pytest.raises(ValueError):
        services.store.search(db, AuditQuery(limit=limit, offset=offset))


def test_statistics(db, services, populated):
    stats = services.store.statistics(db)

    assert stats.total_logs == 5
    assert stats.access_attempts == 3
    assert stats.denied_accesses == 1
    assert stats.unique_actors == 3
    assert stats.most_accessed_subjects[0] == ("p1", 3)
    assert ("system", 1) not in stats.most_accessed_subjects
    assert stats.operation_counts == {"read": 2, "update": 1, "export": 1, "security_alert": 1}


def test_statistics_respect_date_range(db, services, populated):
    stats = services.store.statistics(db, from_date=NOW - timedelta(hours=2))

    assert stats.total_logs == 2
    assert stats.operation_counts == {"export": 1, "security_alert": 1}


def test_count_recent(db, services, populated):
    since = NOW - timedelta(hours=6)

    assert services.store.count_recent(db, actor="nurse.ana", since=since) == 2
    assert services.store.count_recent(db, actor="nurse.ana", since=since, access_result=AccessResult.DENIED) == 1
    assert services.store.count_recent(db, actor="nurse.ana", since=NOW) == 0


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------

def test_purge_is_strictly_before_cutoff(db, services):
    cutoff = NOW - timedelta(days=2555)
    older = _append(db, services.store, timestamp=cutoff - timedelta(microseconds=1))
    at_cutoff = _append(db, services.store, timestamp=cutoff)
    newer = _append(db, services.store, timestamp=cutoff + timedelta(days=1))

    purged = services.store.purge_older_than(db, cutoff)
    db.commit()

    assert purged == 1
    remaining = [e.id for e in services.store.search(db, AuditQuery()).entries]
    assert remaining == [newer.id, at_cutoff.id]
    assert older.id not in remaining
    assert services.store.verify_integrity(db, newer.id).valid


def test_purge_with_nothing_expired(db, services):
    entry = _append(db, services.store, timestamp=NOW)

    assert services.store.purge_older_than(db, NOW - timedelta(days=2555)) == 0
    db.commit()
    assert services.store.search(db, AuditQuery()).total == 1
    assert services.store.get(db, entry.id).id == entry.id
