"""
Object Store Gateway - S3-compatible storage (DigitalOcean Spaces) for
encrypted intake packages.

Objects are written private with only non-PHI metadata (ids, checksum, iv,
tag, key id). Access is granted through time-limited presigned GET URLs.
Deletion after the retention window is the bucket lifecycle policy's job;
``delete`` exists for explicit removal.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

logger = structlog.get_logger(__name__)


DEFAULT_BUCKET = "mindfit-intake-packages"
DEFAULT_URL_TTL_SECONDS = 24 * 60 * 60


class ObjectStoreError(Exception):
    """Exception for object storage failures."""
    pass


@dataclass(frozen=True)
class StoredObject:
    """Location of an uploaded object."""
    url: str
    key: str
    bucket: str
    size: int


class ObjectStoreGateway:
    """Uploads package ciphertext and mints presigned download URLs."""

    def __init__(
        self,
        bucket: str | None = None,
        endpoint_url: str | None = None,
        region: str | None = None,
        s3_client=None,
    ):
        """Initialize the gateway.

        Args:
            bucket: Bucket name. Defaults to SPACES_BUCKET.
            endpoint_url: S3-compatible endpoint. Defaults to SPACES_ENDPOINT
                (unset means plain AWS S3).
            region: Region. Defaults to SPACES_REGION, then AWS_REGION.
            s3_client: Optional pre-built client (tests).
        """
        self.bucket = bucket or os.getenv("SPACES_BUCKET", DEFAULT_BUCKET)
        self.endpoint_url = endpoint_url or os.getenv("SPACES_ENDPOINT") or None
        self.region = region or os.getenv("SPACES_REGION", os.getenv("AWS_REGION", "us-east-1"))

        if s3_client is not None:
            self._s3 = s3_client
        else:
            self._s3 = boto3.client(
                "s3",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
                aws_access_key_id=os.getenv("SPACES_ACCESS_KEY_ID"),
                aws_secret_access_key=os.getenv("SPACES_SECRET_ACCESS_KEY"),
            )

    # ------------------------------------------------------------------ #
    # Keys and URLs
    # ------------------------------------------------------------------ #

    @staticmethod
    def build_key(referral_id: str, package_id: str, now: Optional[datetime] = None) -> str:
        """Deterministic object key: ``YYYY/MM/<referral_id>/<package_id>.enc``."""
        now = now or datetime.utcnow()
        return f"{now:%Y}/{now:%m}/{referral_id}/{package_id}.enc"

    def build_url(self, key: str) -> str:
        """Full (non-signed) object URL for a key."""
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"s3://{self.bucket}/{key}"

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def put(self, data: bytes, key: str, metadata: dict[str, str]) -> StoredObject:
        """
        Upload *data* privately under *key*.

        Raises:
            ObjectStoreError: If the upload fails.
        """
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/octet-stream",
                ACL="private",
                Metadata={k: str(v) for k, v in metadata.items() if v is not None},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("object_upload_failed", key=key, error_type=type(e).__name__)
            raise ObjectStoreError(f"Failed to upload object: {type(e).__name__}") from e

        logger.info("object_uploaded", key=key, size_bytes=len(data))
        return StoredObject(url=self.build_url(key), key=key, bucket=self.bucket, size=len(data))

    def sign_download_url(self, key: str, ttl_seconds: int = DEFAULT_URL_TTL_SECONDS) -> str:
        """
        Presigned GET URL valid for *ttl_seconds*.

        Raises:
            ObjectStoreError: If signing fails or the TTL is not positive.
        """
        if ttl_seconds <= 0:
            raise ObjectStoreError("Presigned URL TTL must be positive")
        try:
            url = self._s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("presigned_url_failed", key=key, error_type=type(e).__name__)
            raise ObjectStoreError(f"Presigned URL generation failed: {type(e).__name__}") from e

        logger.info("presigned_url_generated", key=key, ttl_seconds=ttl_seconds)
        return url

    def delete(self, key: str) -> None:
        """Delete an object. Raises ObjectStoreError on failure."""
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error("object_delete_failed", key=key, error_type=type(e).__name__)
            raise ObjectStoreError(f"Failed to delete object: {type(e).__name__}") from e
        logger.info("object_deleted", key=key)
