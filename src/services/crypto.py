"""
Package Crypto Core

AES-256-GCM authenticated encryption and SHA-256 integrity hashing for
intake package exports.

The IV (16 bytes) and GCM authentication tag (16 bytes) are returned
separately from the ciphertext so they can be stored alongside the package
metadata; the ciphertext alone is what gets uploaded and checksummed.

Keys are always passed in explicitly. Nothing here reads a process-wide
secret.
"""

import hashlib
import hmac
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


ALGORITHM = "AES-256-GCM"
KEY_LENGTH = 32  # 256-bit key
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CryptoError(Exception):
    """Base exception for crypto failures. Never carries key or plaintext."""
    pass


class InvalidKeyLength(CryptoError):
    """Key is not exactly 32 bytes."""
    pass


class FormatError(CryptoError):
    """IV or authentication tag has the wrong length or encoding."""
    pass


class IntegrityError(CryptoError):
    """Authentication tag did not verify (tampered data or wrong key)."""
    pass


class ChecksumMismatch(CryptoError):
    """SHA-256 of the ciphertext does not match the recorded checksum."""
    pass


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext with the IV and tag needed to decrypt it."""
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    @property
    def iv_hex(self) -> str:
        return self.iv.hex()

    @property
    def auth_tag_hex(self) -> str:
        return self.auth_tag.hex()


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        got = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise InvalidKeyLength(f"Invalid key length: expected {KEY_LENGTH} bytes, got {got}")


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, key: bytes) -> EncryptedPayload:
    """
    Encrypt *plaintext* with AES-256-GCM under a fresh random IV.

    Args:
        plaintext: Bytes to encrypt.
        key: 32-byte data key.

    Returns:
        EncryptedPayload with ciphertext, 16-byte IV and 16-byte tag.

    Raises:
        InvalidKeyLength: If key is not 32 bytes.
    """
    _check_key(key)
    iv = os.urandom(IV_LENGTH)
    ct_with_tag = AESGCM(bytes(key)).encrypt(iv, bytes(plaintext), None)
    return EncryptedPayload(
        ciphertext=ct_with_tag[:-AUTH_TAG_LENGTH],
        iv=iv,
        auth_tag=ct_with_tag[-AUTH_TAG_LENGTH:],
    )


def decrypt(payload: EncryptedPayload, key: bytes) -> bytes:
    """
    Decrypt a payload produced by :func:`encrypt`.

    Raises:
        InvalidKeyLength: If key is not 32 bytes.
        FormatError: If the IV or tag is not 16 bytes.
        IntegrityError: If the authentication tag does not verify.
    """
    _check_key(key)
    if len(payload.iv) != IV_LENGTH:
        raise FormatError(f"Invalid IV length: expected {IV_LENGTH} bytes, got {len(payload.iv)}")
    if len(payload.auth_tag) != AUTH_TAG_LENGTH:
        raise FormatError(
            f"Invalid auth tag length: expected {AUTH_TAG_LENGTH} bytes, got {len(payload.auth_tag)}"
        )

    try:
        return AESGCM(bytes(key)).decrypt(
            payload.iv, bytes(payload.ciphertext) + bytes(payload.auth_tag), None
        )
    except InvalidTag:
        raise IntegrityError("Authentication tag verification failed") from None


def payload_from_hex(ciphertext: bytes, iv_hex: str, auth_tag_hex: str) -> EncryptedPayload:
    """Rebuild a payload from stored hex-encoded IV and tag."""
    try:
        iv = bytes.fromhex(iv_hex)
        auth_tag = bytes.fromhex(auth_tag_hex)
    except (TypeError, ValueError):
        raise FormatError("IV and auth tag must be hex-encoded") from None
    return EncryptedPayload(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag)


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

def sha256(data: bytes) -> str:
    """Return the 64-char hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, expected: str) -> bool:
    """Constant-time comparison of sha256(data) against *expected*."""
    return hmac.compare_digest(sha256(data), (expected or "").lower())
