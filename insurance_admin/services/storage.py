"""Blob storage gateway for customer and policy documents."""

from __future__ import annotations

import re
import secrets
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from insurance_admin.config import settings
from insurance_admin.logger import get_logger

logger = get_logger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call.
_DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when storage operations fail."""


@dataclass(frozen=True)
class DeletionOutcome:
    """Result of deleting one key."""

    key: str
    success: bool
    error: str | None = None


class BlobStore(Protocol):
    """Capability used by the reconciliation engine and view builder."""

    def put(self, content: bytes, key_hint: str, content_type: str | None = None) -> str:
        """Store bytes under a fresh key derived from ``key_hint``; return the key."""
        ...

    def get(self, key: str) -> bytes:
        ...

    def delete(self, key: str) -> DeletionOutcome:
        ...

    def delete_many(self, keys: Sequence[str]) -> list[DeletionOutcome]:
        ...

    def sign(self, key: str, ttl: int) -> str:
        """Return a time-limited read URL for ``key``."""
        ...


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")


def generate_key(key_hint: str) -> str:
    """Build ``<folder>/<epoch ms>_<12 hex>_<stem><ext>`` from ``folder/filename``.

    The timestamp and random suffix keep concurrent uploads from colliding.
    """
    hint = PurePosixPath(key_hint.strip("/") or "misc/file")
    folder = str(hint.parent) if str(hint.parent) not in ("", ".") else "misc"
    suffix = hint.suffix.lower()
    stem = _UNSAFE_CHARS.sub("_", hint.stem) or "file"
    timestamp = int(time.time() * 1000)
    return f"{folder}/{timestamp}_{secrets.token_hex(6)}_{stem}{suffix}"


class StorageService:
    """S3/MinIO implementation of :class:`BlobStore`."""

    _checked_buckets: set[str] = set()
    _bucket_lock = threading.Lock()

    def __init__(self, bucket: str | None = None) -> None:
        self.bucket = bucket or settings.s3_bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint or None,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(
                signature_version="s3v4",
                s3={"addressing_style": settings.s3_addressing_style},
            ),
        )

    def _ensure_bucket(self) -> None:
        with self._bucket_lock:
            if self.bucket in self._checked_buckets:
                return
            try:
                self.client.head_bucket(Bucket=self.bucket)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code in ("404", "NoSuchBucket", "NotFound"):
                    try:
                        if settings.s3_region and settings.s3_region != "us-east-1":
                            self.client.create_bucket(
                                Bucket=self.bucket,
                                CreateBucketConfiguration={
                                    "LocationConstraint": settings.s3_region
                                },
                            )
                        else:
                            self.client.create_bucket(Bucket=self.bucket)
                    except (BotoCoreError, ClientError) as create_exc:
                        raise StorageError(f"Failed to create bucket {self.bucket}") from create_exc
                else:
                    raise StorageError(f"Failed to access bucket {self.bucket}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"Failed to access bucket {self.bucket}") from exc
            self._checked_buckets.add(self.bucket)

    def put(self, content: bytes, key_hint: str, content_type: str | None = None) -> str:
        """Upload raw bytes under a freshly generated key."""
        key = generate_key(key_hint)
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        self._ensure_bucket()
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                **extra_args,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to upload to S3", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to upload {key} to {self.bucket}") from exc
        return key

    def get(self, key: str) -> bytes:
        """Download an object's bytes."""
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to fetch from S3", bucket=self.bucket, key=key, error=str(exc))
            raise StorageError(f"Failed to fetch {key} from {self.bucket}") from exc

    def sign(self, key: str, ttl: int | None = None) -> str:
        """Generate a presigned GET URL for temporary access."""
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl or settings.s3_presign_expiry_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "Failed to generate presigned URL",
                bucket=self.bucket,
                key=key,
                error=str(exc),
            )
            raise StorageError(f"Failed to generate presigned URL for {key}") from exc

    def delete(self, key: str) -> DeletionOutcome:
        """Delete one object; failures are reported, not raised."""
        try:
            self._ensure_bucket()
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError, StorageError) as exc:
            logger.error("Failed to delete from S3", bucket=self.bucket, key=key, error=str(exc))
            return DeletionOutcome(key=key, success=False, error=str(exc))
        return DeletionOutcome(key=key, success=True)

    def delete_many(self, keys: Sequence[str]) -> list[DeletionOutcome]:
        """Delete objects in batches, returning one outcome per key."""
        unique_keys = list(dict.fromkeys(k for k in keys if k))
        if not unique_keys:
            return []
        try:
            self._ensure_bucket()
        except StorageError as exc:
            return [DeletionOutcome(key=key, success=False, error=str(exc)) for key in unique_keys]

        outcomes: dict[str, DeletionOutcome] = {}
        for start in range(0, len(unique_keys), _DELETE_BATCH_SIZE):
            batch = unique_keys[start : start + _DELETE_BATCH_SIZE]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": False},
                )
            except (BotoCoreError, ClientError) as exc:
                logger.error(
                    "Batch delete from S3 failed",
                    bucket=self.bucket,
                    batch_size=len(batch),
                    error=str(exc),
                )
                for key in batch:
                    outcomes[key] = DeletionOutcome(key=key, success=False, error=str(exc))
                continue

            for item in response.get("Deleted", []):
                outcomes[item["Key"]] = DeletionOutcome(key=item["Key"], success=True)
            for item in response.get("Errors", []):
                message = f"{item.get('Code', 'Error')}: {item.get('Message', '')}".strip()
                outcomes[item["Key"]] = DeletionOutcome(key=item["Key"], success=False, error=message)
            for key in batch:
                # S3 reports every key it was given; anything missing is unknown.
                outcomes.setdefault(
                    key, DeletionOutcome(key=key, success=False, error="No result reported")
                )

        return [outcomes[key] for key in unique_keys]
