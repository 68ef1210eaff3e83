"""
Shared fixtures for intake package pipeline and service tests.
"""

from unittest.mock import MagicMock

import pytest

from src.services.audit import AuditService
from src.services.intake_packages import IntakePackageService
from src.services.key_provider import EphemeralKeyProvider
from src.services.object_store import ObjectStoreGateway
from src.services.referral_repository import SqlReferralRepository
from src.services.referral_workflow import ReferralWorkflowService


SIGNED_URL = "https://test-bucket.nyc3.digitaloceanspaces.com/obj?X-Amz-Signature=abc"


@pytest.fixture
def mock_s3():
    client = MagicMock()
    client.generate_presigned_url.return_value = SIGNED_URL
    return client


@pytest.fixture
def object_store(mock_s3):
    return ObjectStoreGateway(
        bucket="test-bucket",
        endpoint_url="https://nyc3.digitaloceanspaces.com",
        region="nyc3",
        s3_client=mock_s3,
    )


@pytest.fixture
def key_provider():
    return EphemeralKeyProvider()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def audit(sf):
    return AuditService(session_factory=sf)


@pytest.fixture
def referral_repo(sf):
    return SqlReferralRepository(sf)


@pytest.fixture
def workflow(referral_repo, audit):
    return ReferralWorkflowService(referral_repo, audit_service=audit)


@pytest.fixture
def export_deps(referral_repo, workflow, key_provider, object_store, notifier, audit):
    """Keyword arguments for run_intake_export_pipeline."""
    return {
        "referral_repository": referral_repo,
        "workflow_service": workflow,
        "key_provider": key_provider,
        "object_store": object_store,
        "notifier": notifier,
        "audit_service": audit,
    }


@pytest.fixture
def package_service(sf, referral_repo, workflow, key_provider, object_store, notifier, audit):
    return IntakePackageService(
        sf,
        referral_repository=referral_repo,
        workflow_service=workflow,
        key_provider=key_provider,
        object_store=object_store,
        notifier=notifier,
        audit_service=audit,
    )
