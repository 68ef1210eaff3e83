"""
Package Codec

Turns a referral snapshot into an encrypted, checksummed package and back.

Payload (before encryption) is canonical JSON, UTF-8 encoded:

    {
        "exported_at": "...",
        "exported_by": "...",
        "package_metadata": {"name": "...", "type": "...", "version": "1.0"},
        "referral": {...}
    }

Keys are sorted and separators are compact so the same snapshot always
serializes to the same bytes.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

from src.services import crypto
from src.services.crypto import ChecksumMismatch, EncryptedPayload
from src.services.key_provider import EncryptionKey


PACKAGE_FORMAT_VERSION = "1.0"


class PackageFormatError(Exception):
    """Decrypted bytes are not a valid package payload."""
    pass


@dataclass(frozen=True)
class EncodedPackage:
    """Everything needed to upload and later verify/decrypt a package."""
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    checksum: str
    size_bytes: int
    key_id: str


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_payload(
    snapshot: dict[str, Any] | BaseModel,
    *,
    exported_at: datetime,
    exported_by: Optional[str],
    package_name: str,
    package_type: str,
) -> bytes:
    """Build the canonical byte payload for a referral snapshot."""
    if isinstance(snapshot, BaseModel):
        snapshot = snapshot.model_dump(mode="json")
    payload = {
        "referral": snapshot,
        "exported_at": exported_at.isoformat(),
        "exported_by": exported_by,
        "package_metadata": {
            "name": package_name,
            "type": package_type,
            "version": PACKAGE_FORMAT_VERSION,
        },
    }
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


def encode_package(
    snapshot: dict[str, Any] | BaseModel,
    key: EncryptionKey,
    *,
    package_name: str,
    package_type: str = "referral_export",
    exported_by: Optional[str] = None,
    exported_at: Optional[datetime] = None,
) -> EncodedPackage:
    """
    Serialize, encrypt and checksum a referral snapshot.

    The checksum covers the ciphertext only, so it can be verified by anyone
    holding the object without access to the key.
    """
    plaintext = serialize_payload(
        snapshot,
        exported_at=exported_at or datetime.utcnow(),
        exported_by=exported_by,
        package_name=package_name,
        package_type=package_type,
    )
    encrypted = crypto.encrypt(plaintext, key.key)
    return EncodedPackage(
        ciphertext=encrypted.ciphertext,
        iv=encrypted.iv,
        auth_tag=encrypted.auth_tag,
        checksum=crypto.sha256(encrypted.ciphertext),
        size_bytes=len(encrypted.ciphertext),
        key_id=key.key_id,
    )


def decode_payload(
    ciphertext: bytes,
    iv: bytes,
    auth_tag: bytes,
    key: bytes,
    expected_checksum: Optional[str] = None,
) -> dict[str, Any]:
    """
    Verify and decrypt a package, returning the full payload dict
    (referral snapshot plus export metadata).

    Raises:
        ChecksumMismatch: Checksum given and does not match (raised before
            any decryption is attempted).
        IntegrityError: Authentication tag does not verify.
        FormatError / InvalidKeyLength: Malformed iv/tag or key.
        PackageFormatError: Decrypted bytes are not a package payload.
    """
    if expected_checksum is not None and not crypto.verify_checksum(ciphertext, expected_checksum):
        raise ChecksumMismatch("Checksum verification failed - data may be corrupted")

    plaintext = crypto.decrypt(
        EncryptedPayload(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag), key
    )
    try:
        payload = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise PackageFormatError("Decrypted package is not valid JSON") from None
    if not isinstance(payload, dict) or "referral" not in payload:
        raise PackageFormatError("Decrypted package has no referral snapshot")
    return payload


def decode_package(
    ciphertext: bytes,
    iv: bytes,
    auth_tag: bytes,
    key: bytes,
    expected_checksum: Optional[str] = None,
) -> dict[str, Any]:
    """Verify and decrypt a package, returning just the referral snapshot."""
    return decode_payload(ciphertext, iv, auth_tag, key, expected_checksum)["referral"]
