# tests/conftest.py
import os
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

_TMP_DIR = tempfile.mkdtemp(prefix="healthgrant-tests-")

# Settings are read on first import, so the environment must be ready first
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-for-api-principals-0123456789"
os.environ["QR_SIGNING_KEY"] = "test-qr-signing-key-for-prescriptions-0123456789"
os.environ["PRESCRIPTION_TOKEN_SECRET"] = "test-prescription-jwt-secret-0123456789abcdef"
os.environ["PUBLIC_BASE_URL"] = "https://care.example.test"
os.environ["ENVIRONMENT"] = "test"
for _name in ("PUSH_GATEWAY_URL", "PUSH_SERVER_KEY", "SENDGRID_API_KEY", "ALERT_EMAIL"):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient

from healthgrant import models
from healthgrant.database import SessionLocal, create_tables, drop_tables
from healthgrant.errors import QueueDeliveryError
from healthgrant.security import create_access_token
from healthgrant.services.notification_queue import NotificationQueue, get_notification_queue
from healthgrant.tokens import CapabilityTokenCodec, get_codec


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Stands in for the push/e-mail dispatcher and records what it was asked to deliver."""

    def __init__(self, fail=False, error="push gateway unavailable"):
        self.fail = fail
        self.error = error
        self.delivered = []
        self.attempts = 0

    async def deliver(self, job):
        self.attempts += 1
        if self.fail:
            raise QueueDeliveryError(self.error)
        self.delivered.append(job.id)


@pytest.fixture
def db():
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        drop_tables()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def queue(dispatcher, clock):
    return NotificationQueue(dispatcher=dispatcher, clock=clock)


@pytest.fixture
def codec(clock):
    return CapabilityTokenCodec(clock=clock)


@pytest.fixture
def directory_data(db):
    """One patient, two organizations and practitioners with different rights."""
    patient = models.Patient(digital_identifier="HID-1001", display_name="Asha Rao",
                             email="asha@example.test", device_tokens=["device-abc"])
    other_patient = models.Patient(digital_identifier="HID-2002", display_name="Ben Ortiz")
    clinic = models.Organization(name="Northside Clinic", organization_type="clinic")
    pharmacy = models.Organization(name="Corner Pharmacy", organization_type="pharmacy")
    db.add_all([patient, other_patient, clinic, pharmacy])
    db.flush()

    requester = models.Practitioner(
        organization_id=clinic.id, display_name="Iyer", practitioner_type="doctor",
        can_request_authorization_grants=True, can_access_patient_records=True,
    )
    approver = models.Practitioner(
        organization_id=clinic.id, display_name="Mensah", practitioner_type="doctor",
        can_request_authorization_grants=True, can_approve_authorization_grants=True,
        can_revoke_authorization_grants=True, can_access_patient_records=True,
        can_modify_patient_records=True,
    )
    outsider = models.Practitioner(
        organization_id=pharmacy.id, display_name="Kowalski", practitioner_type="pharmacist",
        can_request_authorization_grants=True, can_approve_authorization_grants=True,
        can_revoke_authorization_grants=True,
    )
    db.add_all([requester, approver, outsider])
    db.commit()

    return SimpleNamespace(
        patient=patient, other_patient=other_patient, clinic=clinic, pharmacy=pharmacy,
        requester=requester, approver=approver, outsider=outsider,
    )


def make_auth_headers(role, **ids):
    claims = {"sub": f"{role}-{ids.get('practitioner_id') or ids.get('patient_id') or 'ops'}", "role": role}
    claims.update(ids)
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def auth_headers():
    return make_auth_headers


@pytest.fixture
def client(db, queue):
    from healthgrant.main import app

    app.dependency_overrides[get_notification_queue] = lambda: queue
    app.dependency_overrides[get_codec] = lambda: CapabilityTokenCodec()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
