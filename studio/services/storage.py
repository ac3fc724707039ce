"""
Storage Service
Durable artifact storage - supports Google Cloud Storage, S3-compatible stores (S3, R2)
and the local filesystem.
"""

import hashlib
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from studio.core.config import settings

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
}


def extension_for(content_type: str) -> str:
    """File extension for a MIME type (jpg when unknown)."""
    base = (content_type or "").split(";")[0].strip().lower()
    if base in _EXTENSIONS:
        return _EXTENSIONS[base]
    subtype = base.split("/")[1] if "/" in base else ""
    return subtype or "jpg"


def generate_artifact_key(owner_id: str, content_type: str, now_ms: Optional[int] = None) -> str:
    """
    Storage key for a generated artifact.

    Format: generated/<sha256(owner)>/<epoch_ms>-<uuid4>.<ext>
    The owner id is hashed so raw identities never appear in object keys.
    """
    owner_hash = hashlib.sha256(owner_id.encode("utf-8")).hexdigest()
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"generated/{owner_hash}/{timestamp}-{uuid.uuid4()}.{extension_for(content_type)}"


class StorageService:
    """Service for file storage operations."""

    def __init__(self):
        # Priority: GCS > Local > S3
        self.use_gcs = settings.USE_GCS
        self.use_local = settings.USE_LOCAL_STORAGE and not self.use_gcs

        if self.use_gcs:
            from google.cloud import storage
            self.gcs_client = storage.Client(project=settings.GCP_PROJECT_ID)
            self.bucket_outputs = self.gcs_client.bucket(settings.GCS_BUCKET_OUTPUTS)
            logger.info(f"[Storage] Using Google Cloud Storage: {settings.GCS_BUCKET_OUTPUTS}")

        elif self.use_local:
            self.base_path = Path(settings.LOCAL_STORAGE_PATH)
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"[Storage] Using local storage: {self.base_path}")

        else:
            # S3 / R2
            import boto3
            from botocore.config import Config
            self.s3 = boto3.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT or None,
                aws_access_key_id=settings.S3_ACCESS_KEY,
                aws_secret_access_key=settings.S3_SECRET_KEY,
                region_name=settings.S3_REGION,
                config=Config(signature_version="s3v4")
            )
            self.bucket = settings.S3_BUCKET
            logger.info(f"[Storage] Using S3: {self.bucket}")

    @property
    def backend(self) -> str:
        if self.use_gcs:
            return "gcs"
        return "local" if self.use_local else "s3"

    async def upload_bytes(self, data: bytes, path: str, content_type: str = "image/jpeg") -> str:
        """Upload bytes and return URL."""
        if self.use_gcs:
            return await self._upload_gcs(data, path, content_type)
        elif self.use_local:
            return await self._upload_local(data, path)
        else:
            return await self._upload_s3(data, path, content_type)

    async def _upload_gcs(self, data: bytes, path: str, content_type: str) -> str:
        """Upload to Google Cloud Storage."""
        blob = self.bucket_outputs.blob(path)
        blob.upload_from_string(data, content_type=content_type)

        # Return API URL that proxies the file
        return self.get_public_url(path)

    async def _upload_local(self, data: bytes, path: str) -> str:
        """Save file to local filesystem."""
        file_path = self.base_path / path
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "wb") as f:
            f.write(data)

        return self.get_public_url(path)

    async def _upload_s3(self, data: bytes, path: str, content_type: str) -> str:
        """Upload to S3."""
        self.s3.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type
        )
        if settings.S3_PUBLIC_URL:
            return f"{settings.S3_PUBLIC_URL.rstrip('/')}/{path}"
        return self.get_public_url(path)

    async def get_file(self, path: str) -> bytes:
        """Get file contents."""
        if self.use_gcs:
            blob = self.bucket_outputs.blob(path)
            return blob.download_as_bytes()
        elif self.use_local:
            file_path = (self.base_path / path).resolve()
            if self.base_path.resolve() not in file_path.parents:
                raise FileNotFoundError(path)
            with open(file_path, "rb") as f:
                return f.read()
        else:
            response = self.s3.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()

    def get_public_url(self, path: str) -> str:
        """API proxy URL for a stored file."""
        return f"{settings.API_BASE_URL.rstrip('/')}/files/{path}"


_storage: Optional[StorageService] = None


def get_storage_service() -> StorageService:
    """Get singleton StorageService."""
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage


__all__ = ["StorageService", "get_storage_service", "generate_artifact_key", "extension_for"]
