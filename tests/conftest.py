"""Shared fixtures: a throwaway SQLite database per test and wired services."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from uuid import uuid4

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from patient_lifecycle.api.dependencies import build_services, get_services
from patient_lifecycle.main import app
from patient_lifecycle.models.database import Base, build_engine, get_db
from patient_lifecycle.models.types import PatientStatus
from patient_lifecycle.services.encryption import EncryptionService


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def services():
    return build_services(encryption=EncryptionService(Fernet.generate_key()))


@pytest.fixture
def make_patient(db, services):
    """Register a patient and force it into ``status`` (test harness only)."""

    def _make(status=PatientStatus.NEW, mrn=None):
        patient = services.patients.register(db, mrn=mrn or f"MRN-{uuid4().hex[:10]}")
        patient.status = PatientStatus(status)
        db.commit()
        return patient.id

    return _make


@pytest.fixture
def client(session_factory, services):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
