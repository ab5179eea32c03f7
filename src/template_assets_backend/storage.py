"""
Object storage for template archives, font files, layout PDFs and frames.

Two interchangeable backends expose the same four operations
(``put``, ``get``, ``delete``, ``signed_url``):

- ``LocalStorage`` writes below a directory and is the default for
  development and tests
- ``S3Storage`` talks to an S3-compatible bucket through boto3

The backend is chosen by ``storage.backend`` in the configuration. Keys are
plain ``/``-separated paths such as
``organisations/<org_id>/assets/<asset_id>/<file_name>``; public templates
live under ``public/templates/<name>/``.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import StorageError
from .utils import ensure_directory

logger = logging.getLogger(__name__)


def _check_key(key: str) -> str:
    parts = PurePosixPath(key).parts
    if not key or key.startswith("/") or ".." in parts:
        raise StorageError(f"Invalid storage key '{key}'")
    return key


class LocalStorage:
    """Filesystem-backed storage rooted at a directory."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root))

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        ensure_directory(path.parent)
        path.write_bytes(data)
        logger.debug(f"Stored {len(data)} bytes at {path}")
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageError(f"Stored file not found at '{key}'")
        return path.read_bytes()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.is_file():
            path.unlink()

    def signed_url(self, key: str, expiration: int = 3600) -> str:
        return self._path(key).resolve().as_uri()


class S3Storage:
    """
    S3-backed storage.

    The client is created lazily on first use so the application can start
    without network access; credential errors surface on the first
    operation instead.
    """

    def __init__(self, bucket: str, prefix: str = "", client=None) -> None:
        if not bucket:
            raise StorageError("S3 storage backend selected but S3_BUCKET_NAME is not configured.")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def _key(self, key: str) -> str:
        _check_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        object_key = self._key(key)
        try:
            self.client.put_object(Bucket=self.bucket, Key=object_key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for s3://{self.bucket}/{object_key}: {exc}")
            raise StorageError(f"Failed to write s3://{self.bucket}/{object_key}: {exc}") from exc
        logger.info(f"Upload successful: s3://{self.bucket}/{object_key}")
        return key

    def get(self, key: str) -> bytes:
        object_key = self._key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=object_key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to read s3://{self.bucket}/{object_key}: {exc}") from exc
        body = response.get("Body")
        if body is None:
            raise StorageError(f"S3 get_object returned no body (bucket={self.bucket}, key={object_key}).")
        return body.read()

    def delete(self, key: str) -> None:
        object_key = self._key(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=object_key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete s3://{self.bucket}/{object_key}: {exc}") from exc

    def signed_url(self, key: str, expiration: int = 3600) -> str:
        object_key = self._key(key)
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_key},
                ExpiresIn=expiration,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to generate presigned URL for {object_key}: {exc}") from exc
        logger.info(f"Generated presigned URL for {object_key} (expires in {expiration}s)")
        return url


def build_storage(config: DictConfig, client=None):
    """Instantiate the backend named by ``storage.backend``."""
    backend = str(config.storage.backend or "").strip().lower()
    if backend in {"local", "filesystem", "fs"}:
        return LocalStorage(Path(config.storage.root))
    if backend == "s3":
        return S3Storage(bucket=str(config.storage.bucket or ""), prefix=str(config.storage.prefix or ""), client=client)
    raise StorageError(f"Unsupported storage backend '{backend}'. Use 'local' or 's3'.")


def template_asset_key(organisation_id: str, template_asset_id: str, file_name: Optional[str] = None) -> str:
    base = f"organisations/{organisation_id}/template_assets/{template_asset_id}"
    return f"{base}/template_{file_name}" if file_name else base


def asset_key(organisation_id: str, asset_id: str, file_name: str) -> str:
    return f"organisations/{organisation_id}/assets/{asset_id}/{file_name}"


def _public_template_dir(template_name: str) -> str:
    if not template_name or "/" in template_name or template_name in (".", ".."):
        raise StorageError(f"Invalid public template name '{template_name}'")
    return f"public/templates/{template_name}"


def public_template_key(template_name: str) -> str:
    return f"{_public_template_dir(template_name)}/{template_name}.zip"


def public_thumbnail_key(template_name: str) -> str:
    return f"{_public_template_dir(template_name)}/thumbnail.png"
