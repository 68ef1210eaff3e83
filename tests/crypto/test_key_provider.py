"""
Key Provider Tests

Ephemeral, environment-wrapped and KMS (mocked) data keys, plus the
get_key_provider factory.
"""

import os
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from src.services.key_provider import (
    EncryptionKey,
    EnvironmentKeyProvider,
    EphemeralKeyProvider,
    KeyNotFound,
    KeyProviderError,
    KmsKeyProvider,
    get_key_provider,
    is_master_key_configured,
    load_master_key,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def master_hex() -> str:
    return os.urandom(32).hex()


@pytest.fixture
def mock_kms_client():
    """KMS mock that 'wraps' by prefixing and unwraps by stripping."""
    client = MagicMock()

    def generate_data_key(KeyId, KeySpec, EncryptionContext):
        plaintext = os.urandom(32)
        return {"Plaintext": plaintext, "CiphertextBlob": b"wrapped:" + plaintext}

    def decrypt(CiphertextBlob, EncryptionContext):
        return {"Plaintext": CiphertextBlob[len(b"wrapped:"):]}

    client.generate_data_key.side_effect = generate_data_key
    client.decrypt.side_effect = decrypt
    return client


# =============================================================================
# EncryptionKey
# =============================================================================

def test_encryption_key_repr_hides_key():
    key = EncryptionKey(key_id="abc", key=b"\x01" * 32)
    assert "abc" in repr(key)
    assert "\\x01" not in repr(key)


# =============================================================================
# EphemeralKeyProvider
# =============================================================================

class TestEphemeralKeyProvider:

    def test_generates_32_byte_key_with_hex_id(self):
        key = EphemeralKeyProvider().generate_key()
        assert len(key.key) == 32
        assert len(key.key_id) == 32
        int(key.key_id, 16)

    def test_keys_are_unique(self):
        provider = EphemeralKeyProvider()
        first, second = provider.generate_key(), provider.generate_key()
        assert first.key != second.key
        assert first.key_id != second.key_id

    def test_resolve_returns_generated_key(self):
        provider = EphemeralKeyProvider()
        key = provider.generate_key()
        assert provider.resolve_key(key.key_id) == key.key

    def test_resolve_unknown_id(self):
        with pytest.raises(KeyNotFound):
            EphemeralKeyProvider().resolve_key("0" * 32)

    def test_keys_do_not_cross_instances(self):
        key = EphemeralKeyProvider().generate_key()
        with pytest.raises(KeyNotFound):
            EphemeralKeyProvider().resolve_key(key.key_id)


# =============================================================================
# EnvironmentKeyProvider
# =============================================================================

class TestEnvironmentKeyProvider:

    def test_load_master_key(self, master_hex):
        assert load_master_key(master_hex) == bytes.fromhex(master_hex)

    def test_load_master_key_missing(self):
        with pytest.raises(KeyProviderError, match="not set"):
            load_master_key()

    def test_load_master_key_wrong_length(self):
        with pytest.raises(KeyProviderError, match="64 hex characters"):
            load_master_key("ab" * 16)

    def test_load_master_key_not_hex(self):
        with pytest.raises(KeyProviderError, match="hex"):
            load_master_key("zz" * 32)

    def test_is_master_key_configured(self, monkeypatch, master_hex):
        assert is_master_key_configured() is False
        monkeypatch.setenv("MINDFIT_AES_KEY", master_hex)
        assert is_master_key_configured() is True

    def test_wrapped_key_round_trip(self, master_hex):
        provider = EnvironmentKeyProvider(bytes.fromhex(master_hex))
        key = provider.generate_key()
        assert key.key_id.startswith("env:")
        assert key.key.hex() not in key.key_id
        assert provider.resolve_key(key.key_id) == key.key

    def test_resolve_survives_new_instance(self, monkeypatch, master_hex):
        monkeypatch.setenv("MINDFIT_AES_KEY", master_hex)
        key = EnvironmentKeyProvider().generate_key()
        assert EnvironmentKeyProvider().resolve_key(key.key_id) == key.key

    def test_other_master_key_cannot_unwrap(self, master_hex):
        key = EnvironmentKeyProvider(bytes.fromhex(master_hex)).generate_key()
        with pytest.raises(KeyNotFound):
            EnvironmentKeyProvider(os.urandom(32)).resolve_key(key.key_id)

    def test_foreign_key_id_rejected(self, master_hex):
        provider = EnvironmentKeyProvider(bytes.fromhex(master_hex))
        with pytest.raises(KeyNotFound):
            provider.resolve_key("kms:abc")
        with pytest.raises(KeyNotFound):
            provider.resolve_key("env:!!!")


# =============================================================================
# KmsKeyProvider
# =============================================================================

class TestKmsKeyProvider:

    def test_generate_uses_data_key(self, mock_kms_client):
        provider = KmsKeyProvider("alias/mindfit-packages", kms_client=mock_kms_client)
        key = provider.generate_key()

        assert key.key_id.startswith("kms:")
        assert len(key.key) == 32
        call = mock_kms_client.generate_data_key.call_args.kwargs
        assert call["KeyId"] == "alias/mindfit-packages"
        assert call["KeySpec"] == "AES_256"
        assert call["EncryptionContext"] == {"purpose": "intake_package"}

    def test_resolve_round_trip(self, mock_kms_client):
        provider = KmsKeyProvider("alias/mindfit-packages", kms_client=mock_kms_client)
        key = provider.generate_key()
        assert provider.resolve_key(key.key_id) == key.key

    def test_generate_failure(self):
        client = MagicMock()
        client.generate_data_key.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "GenerateDataKey"
        )
        with pytest.raises(KeyProviderError):
            KmsKeyProvider("alias/x", kms_client=client).generate_key()

    def test_decrypt_failure_is_key_not_found(self):
        client = MagicMock()
        client.decrypt.side_effect = ClientError(
            {"Error": {"Code": "InvalidCiphertextException", "Message": "bad"}}, "Decrypt"
        )
        with pytest.raises(KeyNotFound):
            KmsKeyProvider("alias/x", kms_client=client).resolve_key("kms:YWJj")


# =============================================================================
# Factory
# =============================================================================

class TestGetKeyProvider:

    def test_default_is_ephemeral(self):
        assert isinstance(get_key_provider(), EphemeralKeyProvider)

    def test_master_key_selects_environment(self, monkeypatch, master_hex):
        monkeypatch.setenv("MINDFIT_AES_KEY", master_hex)
        assert isinstance(get_key_provider(), EnvironmentKeyProvider)

    def test_production_with_kms(self, monkeypatch):
        monkeypatch.setenv("MINDFIT_ENV", "production")
        monkeypatch.setenv("PACKAGE_KMS_KEY_ID", "alias/mindfit-packages")
        monkeypatch.setenv("AWS_REGION", "us-east-1")
        provider = get_key_provider()
        assert isinstance(provider, KmsKeyProvider)
        assert provider.kms_key_id == "alias/mindfit-packages"

    def test_kms_ignored_outside_production(self, monkeypatch):
        monkeypatch.setenv("PACKAGE_KMS_KEY_ID", "alias/mindfit-packages")
        assert isinstance(get_key_provider(), EphemeralKeyProvider)
