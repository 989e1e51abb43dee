"""
Artifact storage for produced PDFs.

This module provides:
- The ArtifactStore interface the orchestrator uploads through
- An S3 backend that stores objects with ``put_object`` and returns either
  a URL under a configured public base or a presigned download URL
- A local backend that writes under an output directory which the API
  serves at ``/outputs``

The backend is chosen by ``storage.backend`` in the configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import StorageError
from .utils import PDF_CONTENT_TYPE, ensure_directory

logger = logging.getLogger(__name__)


class ArtifactStore(Protocol):
    def upload(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        """Store ``data`` under ``key`` and return its public retrieval URL."""
        ...


class S3ArtifactStore:
    """
    Stores artifacts in an S3 bucket.

    Attributes:
        bucket: Target bucket name
        prefix: Key prefix prepended to every object key
        public_base_url: If set, URLs are ``<base>/<key>``; otherwise a
            presigned GET URL valid for ``presign_expiration`` seconds
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        public_base_url: Optional[str] = None,
        presign_expiration: int = 3600,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required for the s3 storage backend")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.presign_expiration = presign_expiration
        self._client = client or boto3.client("s3")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def upload(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        object_key = self._object_key(key)
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{object_key}")
            self._client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed: {exc}")
            raise StorageError(f"Failed to store {key}") from exc

        if self.public_base_url:
            return f"{self.public_base_url}/{object_key}"

        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_key},
                ExpiresIn=self.presign_expiration,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"Failed to generate presigned URL: {exc}")
            raise StorageError(f"Failed to create a download URL for {key}") from exc


class LocalArtifactStore:
    """Writes artifacts below ``output_dir``; URLs are relative to ``public_base_url``."""

    def __init__(self, output_dir: Path, public_base_url: str = "/outputs") -> None:
        self.output_dir = ensure_directory(Path(output_dir)).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def upload(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> str:
        destination = (self.output_dir / key).resolve()
        if not str(destination).startswith(str(self.output_dir)):
            raise StorageError(f"Invalid artifact key: {key}")
        try:
            ensure_directory(destination.parent)
            destination.write_bytes(data)
        except OSError as exc:
            logger.error(f"Local artifact write failed: {exc}")
            raise StorageError(f"Failed to store {key}") from exc
        return f"{self.public_base_url}/{key}"


def build_artifact_store(config: DictConfig) -> ArtifactStore:
    storage = config.storage
    if storage.backend == "s3":
        return S3ArtifactStore(
            bucket=storage.s3_bucket,
            prefix=storage.s3_prefix,
            public_base_url=storage.public_base_url if storage.public_base_url.startswith("http") else None,
            presign_expiration=storage.presign_expiration,
        )
    if storage.backend == "local":
        return LocalArtifactStore(Path(storage.output_dir), storage.public_base_url)
    raise ValueError(f"Unknown storage backend: {storage.backend}")
