"""
MindFit Intake API Tests

Tests verify:
1. Referral submission, lookup and transitions (409 / 422 guidance)
2. Intake package export, listing, download links and deletion
3. Automation job listing and manual runs
4. X-User-ID header is required everywhere
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from src.api.app import app
from src.api.automation import set_scheduler
from src.api.intake_packages import set_intake_package_service
from src.api.referrals import set_referral_workflow_service
from src.models.intake_package import IntakePackage, PackageStatus
from src.models.referral import WorkflowStatus
from src.services.audit import AuditService
from src.services.intake_packages import IntakePackageService
from src.services.key_provider import EphemeralKeyProvider
from src.services.object_store import ObjectStoreGateway
from src.services.referral_repository import SqlReferralRepository
from src.services.referral_workflow import ReferralWorkflowService
from src.services.scheduler import build_scheduler

S = WorkflowStatus
HEADERS = {"X-User-ID": "staff-1"}
SIGNED_URL = "https://test-bucket.nyc3.digitaloceanspaces.com/obj?X-Amz-Signature=abc"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture()
def mock_s3():
    client = MagicMock()
    client.generate_presigned_url.return_value = SIGNED_URL
    return client


@pytest.fixture()
def client(sf, mock_s3, monkeypatch):
    """FastAPI test client wired to in-memory services."""
    monkeypatch.setenv("MINDFIT_SCHEDULER_ENABLED", "false")

    audit = AuditService(session_factory=sf)
    repository = SqlReferralRepository(sf)
    workflow = ReferralWorkflowService(repository, audit_service=audit)
    notifier = MagicMock()
    set_referral_workflow_service(workflow)
    set_intake_package_service(IntakePackageService(
        sf,
        referral_repository=repository,
        workflow_service=workflow,
        key_provider=EphemeralKeyProvider(),
        object_store=ObjectStoreGateway(
            bucket="test-bucket",
            endpoint_url="https://nyc3.digitaloceanspaces.com",
            region="nyc3",
            s3_client=mock_s3,
        ),
        notifier=notifier,
        audit_service=audit,
    ))
    set_scheduler(build_scheduler(repository, workflow, notifier=notifier))

    yield TestClient(app)

    set_referral_workflow_service(None)
    set_intake_package_service(None)
    set_scheduler(None)


@pytest.fixture()
def referral_payload():
    return {
        "client_name": "Jordan Rivera",
        "client_email": "jordan.rivera@mailbox.org",
        "presenting_concerns": "Persistent anxiety affecting work and sleep",
        "insurance_provider": "Acme Health",
    }


@pytest.fixture()
def accepted_referral(insert_referral):
    return insert_referral(S.ASSIGNMENT_ACCEPTED)


def export(client, referral_id, **options):
    return client.post(
        "/intake-packages/",
        json={"referral_id": str(referral_id), **options},
        headers=HEADERS,
    )


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "mindfit-intake", "version": "0.1.0"}


# =============================================================================
# Referrals
# =============================================================================

class TestReferralEndpoints:

    def test_create_referral(self, client, referral_payload):
        response = client.post("/referrals/", json=referral_payload, headers=HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert body["workflow_status"] == "referral_submitted"
        assert body["client_state"] == "prospective"
        assert body["created_by"] == "staff-1"

    def test_create_invalid_email(self, client, referral_payload):
        referral_payload["client_email"] = "not-an-email"
        response = client.post("/referrals/", json=referral_payload, headers=HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"] == "Invalid request"
        assert "not-an-email" not in response.text

    def test_get_referral(self, client, accepted_referral):
        response = client.get(f"/referrals/{accepted_referral}", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["workflow_status"] == "assignment_accepted"

    def test_get_unknown(self, client):
        response = client.get(f"/referrals/{uuid4()}", headers=HEADERS)
        assert response.status_code == 404

    def test_transition(self, client, insert_referral):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = client.post(
            f"/referrals/{referral_id}/transition",
            json={"target_status": "documents_requested"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["workflow_status"] == "documents_requested"
        assert body["last_modified_by"] == "staff-1"

    def test_invalid_transition_lists_allowed(self, client, insert_referral):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = client.post(
            f"/referrals/{referral_id}/transition",
            json={"target_status": "in_treatment"},
            headers=HEADERS,
        )
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert "documents_requested" in detail["allowed_next_statuses"]
        assert "in_treatment" not in detail["allowed_next_statuses"]

    def test_decline_requires_reason(self, client, insert_referral):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = client.post(
            f"/referrals/{referral_id}/transition",
            json={"target_status": "declined"},
            headers=HEADERS,
        )
        assert response.status_code == 422
        assert response.json()["detail"]["required_reason"] == "decline"

    def test_decline_with_reason(self, client, insert_referral):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = client.post(
            f"/referrals/{referral_id}/transition",
            json={"target_status": "declined", "reason": "Out of network"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["client_state"] == "inactive"
        assert response.json()["decline_reason"] == "Out of network"

    def test_unknown_target_status(self, client, insert_referral):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = client.post(
            f"/referrals/{referral_id}/transition",
            json={"target_status": "teleported"},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_transition_unknown_referral(self, client):
        response = client.post(
            f"/referrals/{uuid4()}/transition",
            json={"target_status": "documents_requested"},
            headers=HEADERS,
        )
        assert response.status_code == 404

    def test_next_statuses(self, client, accepted_referral):
        response = client.get(f"/referrals/{accepted_referral}/next-statuses", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["current_status"] == "assignment_accepted"
        assert body["phase"] == "Staging & Assignment"
        options = {o["status"]: o for o in body["next_statuses"]}
        assert set(options) == {"package_exported", "client_contacted", "declined", "cancelled"}
        assert options["client_contacted"]["client_state"] == "pending"
        assert options["declined"]["client_state"] == "inactive"

    def test_next_statuses_unknown(self, client):
        response = client.get(f"/referrals/{uuid4()}/next-statuses", headers=HEADERS)
        assert response.status_code == 404


# =============================================================================
# Intake packages
# =============================================================================

class TestIntakePackageEndpoints:

    def test_export(self, client, accepted_referral, mock_s3):
        response = export(client, accepted_referral, package_name="Rivera intake")

        assert response.status_code == 201
        body = response.json()
        assert body["presigned_url"] == SIGNED_URL
        assert body["package"]["status"] == "uploaded"
        assert body["package"]["package_name"] == "Rivera intake"
        assert body["encryption_key"] is None
        mock_s3.put_object.assert_called_once()

        referral = client.get(f"/referrals/{accepted_referral}", headers=HEADERS).json()
        assert referral["workflow_status"] == "package_exported"

    def test_export_unknown_referral(self, client):
        assert export(client, uuid4()).status_code == 404

    def test_export_from_wrong_status(self, client, insert_referral, mock_s3):
        referral_id = insert_referral(S.REFERRAL_SUBMITTED)
        response = export(client, referral_id)

        assert response.status_code == 409
        assert "allowed_next_statuses" in response.json()["detail"]
        mock_s3.put_object.assert_not_called()

    def test_include_key_refused_by_default(self, client, accepted_referral):
        response = export(client, accepted_referral, include_key=True)
        assert response.status_code == 400

    def test_invalid_recipient(self, client, accepted_referral):
        response = export(client, accepted_referral, notification_recipient="nobody")
        assert response.status_code == 422

    def test_upload_failure(self, client, accepted_referral, mock_s3):
        mock_s3.put_object.side_effect = ClientError(
            {"Error": {"Code": "InternalError", "Message": "oops"}}, "PutObject"
        )
        response = export(client, accepted_referral)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["message"] == "Intake package export failed"
        package = client.get(f"/intake-packages/{detail['package_id']}", headers=HEADERS).json()
        assert package["status"] == "error"

    def test_list_and_get(self, client, accepted_referral):
        package_id = export(client, accepted_referral).json()["package"]["id"]

        listed = client.get(
            "/intake-packages/", params={"referral_id": str(accepted_referral)}, headers=HEADERS
        ).json()
        assert listed["count"] == 1
        assert listed["packages"][0]["id"] == package_id

        none = client.get("/intake-packages/", params={"status": "downloaded"}, headers=HEADERS).json()
        assert none == {"packages": [], "count": 0}

        fetched = client.get(f"/intake-packages/{package_id}", headers=HEADERS)
        assert fetched.status_code == 200
        assert fetched.json()["referral_id"] == str(accepted_referral)

    def test_get_unknown(self, client):
        assert client.get(f"/intake-packages/{uuid4()}", headers=HEADERS).status_code == 404

    def test_download_and_confirm(self, client, accepted_referral):
        package_id = export(client, accepted_referral).json()["package"]["id"]

        link = client.get(f"/intake-packages/{package_id}/download", headers=HEADERS)
        assert link.status_code == 200
        assert link.json()["presigned_url"] == SIGNED_URL

        confirmed = client.post(f"/intake-packages/{package_id}/downloaded", headers=HEADERS)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "downloaded"

    def test_download_expired(self, client, sf, accepted_referral):
        package_id = uuid4()
        past = datetime.utcnow() - timedelta(days=8)
        session = sf()
        try:
            session.add(IntakePackage(
                id=package_id,
                referral_id=accepted_referral,
                package_name="old",
                status=PackageStatus.UPLOADED.value,
                storage_key=f"intake-packages/{accepted_referral}/{package_id}.enc",
                created_at=past,
                uploaded_at=past,
                expires_at=past + timedelta(days=7),
            ))
            session.commit()
        finally:
            session.close()

        assert client.get(f"/intake-packages/{package_id}/download", headers=HEADERS).status_code == 410
        assert client.post(f"/intake-packages/{package_id}/downloaded", headers=HEADERS).status_code == 410
        assert client.get(f"/intake-packages/{package_id}", headers=HEADERS).json()["status"] == "expired"

    def test_download_signing_failure(self, client, accepted_referral, mock_s3):
        package_id = export(client, accepted_referral).json()["package"]["id"]
        mock_s3.generate_presigned_url.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject"
        )
        response = client.get(f"/intake-packages/{package_id}/download", headers=HEADERS)
        assert response.status_code == 502

    def test_delete(self, client, accepted_referral, mock_s3):
        package_id = export(client, accepted_referral).json()["package"]["id"]

        response = client.delete(f"/intake-packages/{package_id}", headers=HEADERS)
        assert response.status_code == 204
        mock_s3.delete_object.assert_called_once()
        assert client.get(f"/intake-packages/{package_id}", headers=HEADERS).status_code == 404

    def test_delete_unknown(self, client):
        assert client.delete(f"/intake-packages/{uuid4()}", headers=HEADERS).status_code == 404


# =============================================================================
# Automation
# =============================================================================

class TestAutomationEndpoints:

    def test_list_jobs(self, client):
        response = client.get("/automation/jobs", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["running"] is False
        assert {j["name"] for j in body["jobs"]} == {
            "auto_transitions", "sla_monitoring", "document_reminders"
        }

    def test_run_job(self, client, referral_payload):
        client.post("/referrals/", json=referral_payload, headers=HEADERS)

        response = client.post("/automation/jobs/sla_monitoring/run", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["job"] == "sla_monitoring"
        assert body["skipped"] is False
        assert body["result"]["checked"] == 1
        assert body["result"]["violations"] == []

    def test_run_records_status(self, client):
        client.post("/automation/jobs/document_reminders/run", headers=HEADERS)
        jobs = {j["name"]: j for j in client.get("/automation/jobs", headers=HEADERS).json()["jobs"]}
        assert jobs["document_reminders"]["last_run"] is not None
        assert jobs["document_reminders"]["last_result"] == []
        assert jobs["document_reminders"]["error_count"] == 0

    def test_unknown_job(self, client):
        response = client.post("/automation/jobs/reticulate_splines/run", headers=HEADERS)
        assert response.status_code == 404


# =============================================================================
# Headers
# =============================================================================

class TestUserHeader:

    @pytest.mark.parametrize("method,path", [
        ("get", "/referrals/00000000-0000-0000-0000-000000000000"),
        ("get", "/intake-packages/"),
        ("get", "/automation/jobs"),
    ])
    def test_missing_user_id(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 422
        assert response.json()["detail"] == "Invalid request"
