# tests/test_api.py
from datetime import timedelta

import pytest

from healthgrant import models
from healthgrant.database import utcnow
from healthgrant.tokens import CapabilityTokenCodec

API = "/api/v1"


@pytest.fixture
def data(directory_data):
    return directory_data


@pytest.fixture
def requester_headers(data, auth_headers):
    return auth_headers("practitioner", practitioner_id=data.requester.id)


@pytest.fixture
def approver_headers(data, auth_headers):
    return auth_headers("practitioner", practitioner_id=data.approver.id)


@pytest.fixture
def patient_headers(data, auth_headers):
    return auth_headers("patient", patient_id=data.patient.id)


@pytest.fixture
def operator_headers(auth_headers):
    return auth_headers("operator")


def new_grant(client, data, headers, omit=(), **overrides):
    body = {
        "userId": data.patient.id,
        "organizationId": data.clinic.id,
        "accessScope": ["canViewMedicalHistory", "canViewPrescriptions"],
        "timeWindowHours": 24,
        "justification": "Follow-up consultation for chest pain",
        "metadata": {"requestSource": "api", "urgencyLevel": "normal"},
    }
    body.update(overrides)
    for key in omit:
        body.pop(key)
    return client.post(f"{API}/grants", json=body, headers=headers)


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestGrantEndpoints:
    def test_request_grant(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers)
        assert response.status_code == 201
        body = response.json()
        assert body["grant"]["status"] == "PENDING"
        assert body["grant"]["effectiveStatus"] == "PENDING"
        assert body["grant"]["requestingPractitionerId"] == data.requester.id
        assert body["grant"]["accessScope"] == ["canViewMedicalHistory", "canViewPrescriptions"]
        assert body["qrDisplayUrl"].endswith(f"/qr/{body['grant']['id']}")
        assert body["accessToken"] is None

    def test_requires_bearer_token(self, client, data):
        assert new_grant(client, data, {}).status_code == 401
        assert new_grant(client, data, {"Authorization": "Bearer nonsense"}).status_code == 401

    def test_patient_cannot_request(self, client, data, patient_headers):
        assert new_grant(client, data, patient_headers).status_code == 403

    def test_requesting_practitioner_is_the_caller(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, requestingPractitionerId=data.approver.id)
        assert response.status_code == 403

    def test_window_out_of_range(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, timeWindowHours=200)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_malformed_body(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, justification="short")
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert body["details"]

    @pytest.mark.parametrize("field", ["justification", "timeWindowHours", "accessScope"])
    def test_required_fields(self, client, db, data, requester_headers, field):
        response = new_grant(client, data, requester_headers, omit=(field,))
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert db.query(models.AuthorizationGrant).count() == 0

    def test_empty_access_scope(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, accessScope=[])
        assert response.status_code == 400

    def test_metadata_block(self, client, data, approver_headers):
        response = new_grant(client, data, approver_headers, metadata={
            "autoApprove": True, "requestSource": "kiosk", "urgencyLevel": "high",
        })
        assert response.status_code == 201
        grant = response.json()["grant"]
        assert grant["status"] == "ACTIVE"
        assert grant["grantedAt"] is not None
        assert grant["requestSource"] == "kiosk"
        assert grant["urgencyLevel"] == "high"

    def test_metadata_is_optional(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, omit=("metadata",))
        assert response.status_code == 201
        grant = response.json()["grant"]
        assert grant["status"] == "PENDING"
        assert grant["requestSource"] == "api"
        assert grant["urgencyLevel"] == "normal"

    def test_conflict_returns_existing_grant_id(self, client, data, approver_headers):
        first = new_grant(client, data, approver_headers, metadata={"autoApprove": True})
        assert first.status_code == 201
        assert first.json()["grant"]["status"] == "ACTIVE"

        second = new_grant(client, data, approver_headers)
        assert second.status_code == 409
        assert second.json()["existingGrantId"] == first.json()["grant"]["id"]

    def test_unknown_patient(self, client, data, requester_headers):
        response = new_grant(client, data, requester_headers, userId=9999)
        assert response.status_code == 404
        assert response.json() == {"error": "Patient not found"}

    def test_action_flow_and_invalid_transition(self, client, data, requester_headers, approver_headers):
        grant_id = new_grant(client, data, requester_headers).json()["grant"]["id"]

        response = client.post(f"{API}/grants/{grant_id}/action",
                               json={"action": "approve", "reason": "Patient consented"},
                               headers=approver_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["previousStatus"] == "PENDING"
        assert body["newStatus"] == "ACTIVE"
        assert body["grant"]["grantedAt"] is not None

        revoke = {"action": "revoke", "reason": "Treatment finished"}
        assert client.post(f"{API}/grants/{grant_id}/action", json=revoke,
                           headers=approver_headers).status_code == 200

        again = client.post(f"{API}/grants/{grant_id}/action", json=revoke, headers=approver_headers)
        assert again.status_code == 400
        assert again.json()["currentStatus"] == "REVOKED"
        assert again.json()["allowedActions"] == []

    def test_patient_approves_own_grant(self, client, data, requester_headers, patient_headers):
        grant_id = new_grant(client, data, requester_headers).json()["grant"]["id"]
        response = client.post(f"{API}/grants/{grant_id}/action",
                               json={"action": "approve", "reason": "Yes, go ahead",
                                     "actionBy": str(data.patient.id)},
                               headers=patient_headers)
        assert response.status_code == 200
        assert response.json()["newStatus"] == "ACTIVE"

    def test_action_without_flag_is_forbidden(self, client, data, requester_headers):
        grant_id = new_grant(client, data, requester_headers).json()["grant"]["id"]
        response = client.post(f"{API}/grants/{grant_id}/action",
                               json={"action": "approve", "reason": "I approve my own request"},
                               headers=requester_headers)
        assert response.status_code == 403

    def test_unknown_action_is_a_validation_error(self, client, data, requester_headers, approver_headers):
        grant_id = new_grant(client, data, requester_headers).json()["grant"]["id"]
        response = client.post(f"{API}/grants/{grant_id}/action",
                               json={"action": "extend", "reason": "Need more time"},
                               headers=approver_headers)
        assert response.status_code == 400

    def test_get_grant_details(self, client, data, requester_headers, patient_headers, auth_headers):
        grant_id = new_grant(client, data, requester_headers).json()["grant"]["id"]

        response = client.get(f"{API}/grants/{grant_id}", headers=patient_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["allowedActions"] == ["approve", "deny"]
        assert body["isExpired"] is False
        assert body["isActive"] is False

        other = auth_headers("patient", patient_id=data.other_patient.id)
        assert client.get(f"{API}/grants/{grant_id}", headers=other).status_code == 403
        outsider = auth_headers("practitioner", practitioner_id=data.outsider.id)
        assert client.get(f"{API}/grants/{grant_id}", headers=outsider).status_code == 403
        assert client.get(f"{API}/grants/9999", headers=patient_headers).status_code == 404

    def test_list_grants(self, client, data, requester_headers, patient_headers, auth_headers):
        new_grant(client, data, requester_headers)
        new_grant(client, data, requester_headers, userId=data.other_patient.id)

        mine = client.get(f"{API}/grants", headers=patient_headers)
        assert mine.status_code == 200
        assert mine.json()["pagination"]["total"] == 1
        assert mine.json()["grants"][0]["userId"] == data.patient.id

        clinic = client.get(f"{API}/grants", params={"organizationId": data.clinic.id, "limit": 1},
                            headers=requester_headers)
        assert clinic.json()["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}

        pending = client.get(f"{API}/grants", params={"organizationId": data.clinic.id, "status": "PENDING"},
                             headers=requester_headers)
        assert pending.json()["pagination"]["total"] == 2

        other = client.get(f"{API}/grants", params={"userId": data.other_patient.id}, headers=patient_headers)
        assert other.status_code == 403
        outsider = auth_headers("practitioner", practitioner_id=data.outsider.id)
        foreign = client.get(f"{API}/grants", params={"organizationId": data.clinic.id}, headers=outsider)
        assert foreign.status_code == 403


class TestScanAndPermissions:
    def test_scan_then_check_permissions(self, client, data, requester_headers, approver_headers):
        raw = CapabilityTokenCodec().patient_token_payload("HID-1001")
        response = client.post(f"{API}/grants/scan", json={
            "scannedData": raw,
            "organizationId": data.clinic.id,
            "accessScope": ["canViewMedicalHistory"],
            "timeWindowHours": 24,
            "justification": "Walk-in patient presented QR at front desk",
        }, headers=requester_headers)
        assert response.status_code == 201
        body = response.json()
        grant_id = body["grant"]["id"]
        token = body["accessToken"]
        assert token
        assert body["grant"]["requestSource"] == "qr_scan"

        url = f"{API}/grants/{grant_id}/permissions/canViewMedicalHistory"
        assert client.get(url, headers={"X-Grant-Token": token}).json()["allowed"] is False

        client.post(f"{API}/grants/{grant_id}/action",
                    json={"action": "approve", "reason": "Patient consented"}, headers=approver_headers)
        check = client.get(url, headers={"X-Grant-Token": token})
        assert check.status_code == 200
        assert check.json() == {"grantId": grant_id, "scope": "canViewMedicalHistory", "allowed": True}

        assert client.get(f"{API}/grants/{grant_id + 1}/permissions/canViewMedicalHistory",
                          headers={"X-Grant-Token": token}).status_code == 403
        forged = token.rsplit(".", 1)[0] + ".invalidsignature"
        assert client.get(url, headers={"X-Grant-Token": forged}).status_code == 401

    def test_invalid_scan(self, client, data, requester_headers):
        response = client.post(f"{API}/grants/scan", json={
            "scannedData": "https://example.test/not-a-patient",
            "organizationId": data.clinic.id,
            "accessScope": ["canViewMedicalHistory"],
            "timeWindowHours": 24,
            "justification": "Walk-in patient presented QR at front desk",
        }, headers=requester_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid QR code"


class TestPatientQR:
    def test_png(self, client, data):
        response = client.get(f"{API}/patients/HID-1001/qr")
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content[:8] == b"\x89PNG\r\n\x1a\n"

    def test_svg(self, client, data):
        response = client.get(f"{API}/patients/HID-1001/qr", params={"format": "svg", "size": 4})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("image/svg+xml")
        assert "<svg" in response.text

    def test_unknown_patient(self, client, data):
        assert client.get(f"{API}/patients/HID-0000/qr").status_code == 404

    def test_generation_is_audited(self, client, db, data):
        client.get(f"{API}/patients/HID-1001/qr")
        actions = [row.action for row in db.query(models.AuditLog).all()]
        assert actions == [models.AuditAction.PATIENT_QR_GENERATED]


class TestPrescriptionEndpoints:
    body = {
        "encounterId": "enc-77",
        "prescriptionIndex": 0,
        "medication": {"name": "Amoxicillin", "dosage": "500mg", "frequency": "3x daily"},
        "patient": {"digitalId": "HID-1001"},
        "prescriber": {"id": "prac-9", "licenseNumber": "MED-4431"},
        "organization": {"id": "org-3", "name": "Northside Clinic"},
    }

    def test_issue_and_verify(self, client, requester_headers):
        issued = client.post(f"{API}/prescriptions/tokens", json=self.body, headers=requester_headers)
        assert issued.status_code == 201
        token = issued.json()["token"]

        verified = client.post(f"{API}/prescriptions/verify", json={"token": token}, headers=requester_headers)
        assert verified.status_code == 200
        prescription = verified.json()["prescription"]
        assert verified.json()["valid"] is True
        assert prescription["medication"]["dosage"] == "500mg"
        assert prescription["type"] == "prescription"
        assert "signature" not in prescription

    def test_malformed_token(self, client, requester_headers):
        response = client.post(f"{API}/prescriptions/verify", json={"token": "not-a-token"},
                               headers=requester_headers)
        assert response.status_code == 400

    def test_foreign_signature(self, client, requester_headers):
        settings = CapabilityTokenCodec().settings.model_copy(
            update={"prescription_token_secret": "somebody-elses-secret-" + "q" * 32})
        forged = CapabilityTokenCodec(settings=settings).issue_prescription_token({
            "type": "prescription", "encounterId": "enc-1",
            "expiresAt": (utcnow() + timedelta(days=1)).isoformat(),
        })
        response = client.post(f"{API}/prescriptions/verify", json={"token": forged}, headers=requester_headers)
        assert response.status_code == 401

    def test_expired_prescription(self, client, requester_headers):
        body = dict(self.body, issuedAt=(utcnow() - timedelta(days=10)).isoformat(),
                    expiresAt=(utcnow() - timedelta(days=1)).isoformat())
        token = client.post(f"{API}/prescriptions/tokens", json=body, headers=requester_headers).json()["token"]
        response = client.post(f"{API}/prescriptions/verify", json={"token": token}, headers=requester_headers)
        assert response.status_code == 410

    def test_operators_cannot_issue(self, client, operator_headers):
        response = client.post(f"{API}/prescriptions/tokens", json=self.body, headers=operator_headers)
        assert response.status_code == 403


class TestAdminEndpoints:
    def test_process_queue(self, client, data, requester_headers, operator_headers, dispatcher):
        new_grant(client, data, requester_headers)
        response = client.post(f"{API}/admin/queue/process", json={"batchSize": 5}, headers=operator_headers)
        assert response.status_code == 200
        assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "errors": []}
        assert len(dispatcher.delivered) == 1

        stats = client.get(f"{API}/admin/queue/stats", headers=operator_headers).json()
        assert stats["COMPLETED"] == 1
        assert stats["total"] == 1

    def test_exhausted_job_raises_operator_alert(self, client, db, queue, dispatcher, operator_headers):
        dispatcher.fail = True
        job = queue.enqueue(db, models.NotificationJobType.REMINDER, 1,
                            {"title": "Access Expiring Soon", "body": "Expires shortly"}, max_retries=0)
        response = client.post(f"{API}/admin/queue/process", headers=operator_headers)
        assert response.json()["failed"] == 1

        alerts = db.query(models.NotificationJob).filter(
            models.NotificationJob.type == models.NotificationJobType.SYSTEM_ALERT).all()
        assert len(alerts) == 1
        assert alerts[0].payload["data"] == {"jobIds": [job.id]}
        assert alerts[0].recipient_type == "operator"

    def test_batch_size_out_of_range(self, client, operator_headers):
        response = client.post(f"{API}/admin/queue/process", json={"batchSize": 500}, headers=operator_headers)
        assert response.status_code == 400

    def test_non_operators_are_forbidden(self, client, requester_headers, patient_headers):
        assert client.post(f"{API}/admin/queue/process", headers=requester_headers).status_code == 403
        assert client.get(f"{API}/admin/queue/stats", headers=patient_headers).status_code == 403

    def test_cleanup(self, client, operator_headers):
        response = client.post(f"{API}/admin/queue/cleanup", json={"olderThanHours": 48}, headers=operator_headers)
        assert response.status_code == 200
        assert response.json() == {"deletedCount": 0}

    def test_sweep_expires_overdue_grants(self, client, db, data, operator_headers):
        created = utcnow() - timedelta(hours=3)
        overdue = models.AuthorizationGrant(
            subject_id=data.patient.id, organization_id=data.clinic.id,
            status=models.GrantStatus.PENDING, time_window_hours=1,
            expires_at=created + timedelta(hours=1), created_at=created,
        )
        db.add(overdue)
        db.commit()

        response = client.post(f"{API}/admin/grants/sweep", headers=operator_headers)
        assert response.status_code == 200
        assert response.json() == {"expired": 1, "reminded": 0}
        db.refresh(overdue)
        assert overdue.status == models.GrantStatus.EXPIRED
