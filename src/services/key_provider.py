"""
Package Key Provider

Supplies a fresh data-encryption key (DEK) per intake package together with
an opaque key id that is safe to store next to the package metadata.

Providers:
    EphemeralKeyProvider   -- random keys held in process memory (dev/tests)
    EnvironmentKeyProvider -- DEK wrapped under the MINDFIT_AES_KEY master key
    KmsKeyProvider         -- AWS KMS GenerateDataKey envelope encryption

Key id formats:
    <32 hex chars>               ephemeral
    env:<base64url(nonce+wrapped DEK)>
    kms:<base64url(KMS CiphertextBlob)>

The raw DEK is never part of a key id, so storing the id does not expose the
key; recovering the DEK requires the master key or KMS.
"""

import base64
import binascii
import os
import secrets
from dataclasses import dataclass, field
from typing import Optional, Protocol, Union

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.services.crypto import KEY_LENGTH

logger = structlog.get_logger(__name__)


MASTER_KEY_ENV = "MINDFIT_AES_KEY"
_WRAP_NONCE_LENGTH = 12
_WRAP_AAD = b"mindfit:intake-package:dek"
_KMS_CONTEXT = {"purpose": "intake_package"}


class KeyProviderError(Exception):
    """Exception for key provider errors."""
    pass


class KeyNotFound(KeyProviderError):
    """Key id is unknown to (or cannot be unwrapped by) this provider."""
    pass


@dataclass(frozen=True)
class EncryptionKey:
    """A data key and its opaque identifier. Lives for one encrypt/decrypt."""
    key_id: str
    key: bytes = field(repr=False)


class KeyProvider(Protocol):
    """Minimal interface that all key providers expose."""

    def generate_key(self) -> EncryptionKey: ...
    def resolve_key(self, key_id: str) -> bytes: ...


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(text + padding)
    except (binascii.Error, ValueError):
        raise KeyNotFound("Malformed key id") from None


# ---------------------------------------------------------------------------
# EphemeralKeyProvider -- local development (no master key)
# ---------------------------------------------------------------------------

class EphemeralKeyProvider:
    """
    Generates random keys and remembers them for the life of the process.

    Packages encrypted with this provider cannot be decrypted after a restart
    unless the key was handed out through the development escape hatch.
    """

    def __init__(self):
        self._keys: dict[str, bytes] = {}

    def generate_key(self) -> EncryptionKey:
        key = EncryptionKey(key_id=secrets.token_hex(16), key=os.urandom(KEY_LENGTH))
        self._keys[key.key_id] = key.key
        return key

    def resolve_key(self, key_id: str) -> bytes:
        try:
            return self._keys[key_id]
        except KeyError:
            raise KeyNotFound(f"Unknown key id: {key_id}") from None


# ---------------------------------------------------------------------------
# EnvironmentKeyProvider -- master key from environment
# ---------------------------------------------------------------------------

def load_master_key(value: Optional[str] = None) -> bytes:
    """
    Parse the hex master key from *value* or ``MINDFIT_AES_KEY``.

    Raises:
        KeyProviderError: If unset or not 64 hex characters.
    """
    master_hex = value if value is not None else os.environ.get(MASTER_KEY_ENV)
    if not master_hex:
        raise KeyProviderError(
            f"{MASTER_KEY_ENV} environment variable not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    try:
        key = bytes.fromhex(master_hex)
    except ValueError:
        raise KeyProviderError(f"{MASTER_KEY_ENV} must be hex-encoded") from None
    if len(key) != KEY_LENGTH:
        raise KeyProviderError(
            f"{MASTER_KEY_ENV} must be {KEY_LENGTH * 2} hex characters ({KEY_LENGTH} bytes). "
            f"Got {len(master_hex)} characters."
        )
    return key


def is_master_key_configured() -> bool:
    """True if MINDFIT_AES_KEY is set and valid."""
    try:
        load_master_key()
        return True
    except KeyProviderError:
        return False


class EnvironmentKeyProvider:
    """
    Envelope encryption under a master key taken from the environment.

    Each package gets a fresh random DEK; the DEK is wrapped with AES-GCM
    under the master key and the wrapped form becomes the key id.
    """

    PREFIX = "env:"

    def __init__(self, master_key: Optional[bytes] = None):
        self._master = master_key if master_key is not None else load_master_key()
        if len(self._master) != KEY_LENGTH:
            raise KeyProviderError(f"Master key must be {KEY_LENGTH} bytes")

    def generate_key(self) -> EncryptionKey:
        dek = os.urandom(KEY_LENGTH)
        nonce = os.urandom(_WRAP_NONCE_LENGTH)
        wrapped = AESGCM(self._master).encrypt(nonce, dek, _WRAP_AAD)
        return EncryptionKey(key_id=self.PREFIX + _b64encode(nonce + wrapped), key=dek)

    def resolve_key(self, key_id: str) -> bytes:
        if not key_id.startswith(self.PREFIX):
            raise KeyNotFound("Key id was not issued by the environment key provider")
        blob = _b64decode(key_id[len(self.PREFIX):])
        nonce, wrapped = blob[:_WRAP_NONCE_LENGTH], blob[_WRAP_NONCE_LENGTH:]
        try:
            return AESGCM(self._master).decrypt(nonce, wrapped, _WRAP_AAD)
        except (InvalidTag, ValueError):
            raise KeyNotFound("Key id cannot be unwrapped with the configured master key") from None


# ---------------------------------------------------------------------------
# KmsKeyProvider -- production KMS envelope encryption
# ---------------------------------------------------------------------------

class KmsKeyProvider:
    """
    AWS KMS envelope encryption for package data keys.

    Calls KMS GenerateDataKey for every package and stores the encrypted data
    key (CiphertextBlob) in the key id, so KMS is only needed to unwrap it.
    """

    PREFIX = "kms:"

    def __init__(self, kms_key_id: str, region: str | None = None, kms_client=None):
        """
        Args:
            kms_key_id: ARN or alias of the KMS key used for envelope encryption.
            region: AWS region. Falls back to AWS_REGION / AWS_DEFAULT_REGION.
            kms_client: Optional pre-built client (tests).
        """
        self.kms_key_id = kms_key_id
        region = region or os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1"))
        self._kms = kms_client or boto3.client("kms", region_name=region)

    def generate_key(self) -> EncryptionKey:
        try:
            response = self._kms.generate_data_key(
                KeyId=self.kms_key_id,
                KeySpec="AES_256",
                EncryptionContext=_KMS_CONTEXT,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("kms_generate_data_key_failed", error_type=type(e).__name__)
            raise KeyProviderError("KMS data key generation failed") from e
        return EncryptionKey(
            key_id=self.PREFIX + _b64encode(response["CiphertextBlob"]),
            key=response["Plaintext"],
        )

    def resolve_key(self, key_id: str) -> bytes:
        if not key_id.startswith(self.PREFIX):
            raise KeyNotFound("Key id was not issued by the KMS key provider")
        blob = _b64decode(key_id[len(self.PREFIX):])
        try:
            response = self._kms.decrypt(CiphertextBlob=blob, EncryptionContext=_KMS_CONTEXT)
        except (ClientError, BotoCoreError) as e:
            logger.error("kms_decrypt_failed", error_type=type(e).__name__)
            raise KeyNotFound("KMS could not unwrap the data key") from e
        return response["Plaintext"]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_key_provider() -> Union[KmsKeyProvider, EnvironmentKeyProvider, EphemeralKeyProvider]:
    """
    Return the appropriate key provider for the current environment.

    Returns:
        KmsKeyProvider when MINDFIT_ENV=production and PACKAGE_KMS_KEY_ID is
        set; EnvironmentKeyProvider when MINDFIT_AES_KEY is set;
        EphemeralKeyProvider otherwise.
    """
    env = os.environ.get("MINDFIT_ENV", "development")
    kms_key_id = os.environ.get("PACKAGE_KMS_KEY_ID")

    if env == "production" and kms_key_id:
        region = os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1"))
        return KmsKeyProvider(kms_key_id=kms_key_id, region=region)

    if os.environ.get(MASTER_KEY_ENV):
        return EnvironmentKeyProvider()

    if env == "production":
        logger.warning("ephemeral_key_provider_in_production")
    return EphemeralKeyProvider()
