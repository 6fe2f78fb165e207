"""Tests for the retention-window purge."""

from datetime import datetime, timedelta, timezone

import pytest

from patient_lifecycle.models.records import AuditQuery, NewAuditEntry
from patient_lifecycle.models.types import PatientStatus
from patient_lifecycle.services.retention import RetentionManager
from patient_lifecycle.services.status_tracker import StatusTracker

NOW = datetime(2030, 6, 1, tzinfo=timezone.utc)


def _stamp(db, store, age, subject):
    entry = store.append(
        db,
        NewAuditEntry(
            actor="dr.silva",
            subject=subject,
            operation="read",
            data_type="patient_data",
            timestamp=NOW - age,
        ),
    )
    db.commit()
    return entry


def test_window_below_legal_minimum_is_refused(services):
    with pytest.raises(ValueError):
        RetentionManager(services.store, retention_days=2554)


def test_cutoff():
    manager = RetentionManager(store=None, retention_days=3000)
    assert manager.cutoff(NOW) == NOW - timedelta(days=3000)


def test_purge_boundary(db, services):
    expired = _stamp(db, services.store, timedelta(days=2556), "expired")
    at_boundary = _stamp(db, services.store, timedelta(days=2555), "boundary")
    recent = _stamp(db, services.store, timedelta(days=1), "recent")

    purged = services.retention.purge(db, now=NOW)

    assert purged == 1
    subjects = {e.subject for e in services.store.search(db, AuditQuery()).entries}
    assert subjects == {"boundary", "recent", "system"}
    assert expired.subject not in subjects
    assert services.store.verify_integrity(db, at_boundary.id).valid
    assert services.store.verify_integrity(db, recent.id).valid


def test_purge_records_itself(db, services):
    _stamp(db, services.store, timedelta(days=4000), "expired")

    services.retention.purge(db, now=NOW)

    (entry,) = services.store.search(db, AuditQuery(operation="purge_audit_logs")).entries
    assert entry.actor == "system"
    assert entry.timestamp == NOW
    assert entry.new_values["purged"] == 1
    assert entry.new_values["cutoff"] == (NOW - timedelta(days=2555)).isoformat()
    assert services.store.verify_integrity(db, entry.id).valid


def test_repeat_purge_is_idempotent(db, services):
    _stamp(db, services.store, timedelta(days=3000), "expired")
    _stamp(db, services.store, timedelta(days=10), "recent")

    assert services.retention.purge(db, now=NOW) == 1
    after_first = {e.id for e in services.store.search(db, AuditQuery()).entries}

    assert services.retention.purge(db, now=NOW) == 0
    after_second = {e.id for e in services.store.search(db, AuditQuery()).entries}

    assert after_first <= after_second
    assert len(after_second - after_first) == 1  # the second run's own record


def test_purge_removes_expired_status_transitions(db, services, make_patient):
    old_clock = StatusTracker(services.store, services.patients, clock=lambda: NOW - timedelta(days=2600))
    patient_id = make_patient(PatientStatus.NEW)
    old_clock.change_status(db, patient_id, PatientStatus.ACTIVE, actor="dr.silva")
    services.tracker.change_status(db, patient_id, PatientStatus.INACTIVE, "moved away", actor="dr.silva")

    purged = services.retention.purge(db, now=NOW)

    assert purged == 1
    history = services.tracker.get_patient_status_history(db, patient_id)
    assert [t.to_status for t in history] == [PatientStatus.INACTIVE]


def test_purge_record_names_requesting_actor(db, services):
    services.retention.purge(db, now=NOW, actor="compliance.officer")

    (entry,) = services.store.search(db, AuditQuery(operation="purge_audit_logs")).entries
    assert entry.actor == "compliance.officer"
