"""
Object Store Gateway Tests

Uses a MagicMock S3 client; no network access.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from src.services.object_store import ObjectStoreError, ObjectStoreGateway


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_s3():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://signed.example/obj?sig=abc"
    return client


@pytest.fixture
def gateway(mock_s3):
    return ObjectStoreGateway(
        bucket="test-bucket",
        endpoint_url="https://nyc3.digitaloceanspaces.com",
        region="nyc3",
        s3_client=mock_s3,
    )


def _client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)


# =============================================================================
# Keys and URLs
# =============================================================================

class TestKeysAndUrls:

    def test_build_key_layout(self):
        key = ObjectStoreGateway.build_key("ref-1", "pkg-1", now=datetime(2026, 3, 5))
        assert key == "2026/03/ref-1/pkg-1.enc"

    def test_build_url_with_endpoint(self, gateway):
        url = gateway.build_url("2026/03/ref-1/pkg-1.enc")
        assert url == "https://nyc3.digitaloceanspaces.com/test-bucket/2026/03/ref-1/pkg-1.enc"

    def test_build_url_without_endpoint(self, mock_s3):
        gateway = ObjectStoreGateway(bucket="b", s3_client=mock_s3)
        assert gateway.build_url("a/b.enc") == "s3://b/a/b.enc"

    def test_env_defaults(self, monkeypatch, mock_s3):
        monkeypatch.setenv("SPACES_BUCKET", "env-bucket")
        monkeypatch.delenv("SPACES_ENDPOINT", raising=False)
        gateway = ObjectStoreGateway(s3_client=mock_s3)
        assert gateway.bucket == "env-bucket"
        assert gateway.endpoint_url is None


# =============================================================================
# Operations
# =============================================================================

class TestPut:

    def test_put_writes_private_object(self, gateway, mock_s3):
        stored = gateway.put(b"ciphertext", "k/pkg.enc", {"package-id": "p1", "iv": None})

        kwargs = mock_s3.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "test-bucket"
        assert kwargs["Key"] == "k/pkg.enc"
        assert kwargs["Body"] == b"ciphertext"
        assert kwargs["ACL"] == "private"
        assert kwargs["ContentType"] == "application/octet-stream"
        assert kwargs["Metadata"] == {"package-id": "p1"}

        assert stored.key == "k/pkg.enc"
        assert stored.bucket == "test-bucket"
        assert stored.size == len(b"ciphertext")
        assert stored.url.endswith("/test-bucket/k/pkg.enc")

    def test_put_failure_wrapped(self, gateway, mock_s3):
        mock_s3.put_object.side_effect = _client_error("PutObject")
        with pytest.raises(ObjectStoreError, match="ClientError"):
            gateway.put(b"x", "k", {})


class TestSignDownloadUrl:

    def test_signs_get_object(self, gateway, mock_s3):
        url = gateway.sign_download_url("k/pkg.enc", ttl_seconds=3600)

        assert url == "https://signed.example/obj?sig=abc"
        args, kwargs = mock_s3.generate_presigned_url.call_args
        assert args == ("get_object",)
        assert kwargs["Params"] == {"Bucket": "test-bucket", "Key": "k/pkg.enc"}
        assert kwargs["ExpiresIn"] == 3600

    @pytest.mark.parametrize("ttl", [0, -1])
    def test_rejects_non_positive_ttl(self, gateway, mock_s3, ttl):
        with pytest.raises(ObjectStoreError):
            gateway.sign_download_url("k", ttl_seconds=ttl)
        mock_s3.generate_presigned_url.assert_not_called()

    def test_signing_failure_wrapped(self, gateway, mock_s3):
        mock_s3.generate_presigned_url.side_effect = _client_error("GetObject")
        with pytest.raises(ObjectStoreError):
            gateway.sign_download_url("k")


class TestDelete:

    def test_delete(self, gateway, mock_s3):
        gateway.delete("k/pkg.enc")
        mock_s3.delete_object.assert_called_once_with(Bucket="test-bucket", Key="k/pkg.enc")

    def test_delete_failure_wrapped(self, gateway, mock_s3):
        mock_s3.delete_object.side_effect = _client_error("DeleteObject")
        with pytest.raises(ObjectStoreError):
            gateway.delete("k")
