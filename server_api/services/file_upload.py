import asyncio
import hashlib
import logging
import uuid
from typing import Any, Optional

import boto3
import requests
from botocore.config import Config

from ..core.config import (
    S3_ACCESS_KEY,
    S3_BUCKET,
    S3_DELETE_URL_TTL_SECONDS,
    S3_ENDPOINT_URL,
    S3_REGION,
    S3_REQUEST_TIMEOUT_SECONDS,
    S3_SECRET_KEY,
    S3_UPLOAD_URL_TTL_SECONDS,
    UPLOAD_MAX_IMAGE_BYTES,
)
from ..core.errors import UpstreamUnavailableError, ValidationError
from ..models import File
from .store import ServerStore

logger = logging.getLogger(__name__)

_COMPOUND_EXTENSIONS = (".tar.gz", ".tar.bz2", ".tar.xz")

IMAGE_EXTENSIONS = {"jpeg": ".jpg", "png": ".png", "webp": ".webp"}


def get_file_extension(filename: str) -> str:
    if ".backup.tar.gz" in filename:
        return ".backup.tar.gz"
    pos = filename.find(".backup.tar")
    if pos != -1:
        return filename[pos:]
    for extension in _COMPOUND_EXTENSIONS:
        if extension in filename:
            return extension
    pos = filename.rfind(".")
    return filename[pos:] if pos != -1 else ""


def detect_image_format(content: bytes) -> Optional[str]:
    if content.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if len(content) >= 12 and content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "webp"
    return None


def validate_image(content: bytes, max_bytes: int = UPLOAD_MAX_IMAGE_BYTES) -> str:
    """Return the detected format (``jpeg``, ``png`` or ``webp``)."""
    if not content:
        raise ValidationError("Image file is empty")
    if len(content) > max_bytes:
        raise ValidationError(f"Image must not exceed {max_bytes // (1024 * 1024)} MB")
    image_format = detect_image_format(content)
    if image_format is None:
        raise ValidationError("Only JPEG, PNG and WebP images are supported")
    return image_format


class ObjectStorage:
    """Presigned-URL access to the S3-compatible bucket holding uploads."""

    def __init__(
        self,
        endpoint_url: str = S3_ENDPOINT_URL,
        access_key: str = S3_ACCESS_KEY,
        secret_key: str = S3_SECRET_KEY,
        bucket: str = S3_BUCKET,
        region: str = S3_REGION,
        client: Any = None,
    ):
        self.endpoint_url = endpoint_url.rstrip("/")
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def presign_put(self, key: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )

    def presign_delete(self, key: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            "delete_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
            HttpMethod="DELETE",
        )

    def object_url(self, key: str) -> str:
        return f"{self.endpoint_url}/{self.bucket}/{key}"

    def key_from_path(self, file_path: str) -> str:
        prefix = f"{self.endpoint_url}/{self.bucket}/"
        if file_path.startswith(prefix):
            return file_path[len(prefix):]
        return file_path


class FileUploadService:
    def __init__(
        self,
        store: ServerStore,
        storage: ObjectStorage,
        upload_url_ttl: int = S3_UPLOAD_URL_TTL_SECONDS,
        delete_url_ttl: int = S3_DELETE_URL_TTL_SECONDS,
        timeout: float = S3_REQUEST_TIMEOUT_SECONDS,
        max_image_bytes: int = UPLOAD_MAX_IMAGE_BYTES,
    ):
        self.store = store
        self.storage = storage
        self.upload_url_ttl = upload_url_ttl
        self.delete_url_ttl = delete_url_ttl
        self.timeout = timeout
        self.max_image_bytes = max_image_bytes

    async def upload(self, content: bytes, filename: str) -> File:
        hash_value = hashlib.sha256(content).hexdigest()
        existing = await self.store.get_file(hash_value)
        if existing is not None:
            logger.info("Upload deduplicated: %s", hash_value)
            return existing

        key = f"uploads/{uuid.uuid4()}{get_file_extension(filename)}"
        url = self.storage.presign_put(key, self.upload_url_ttl)
        await asyncio.to_thread(self._send, "PUT", url, content)

        row, created = await self.store.insert_file(hash_value, self.storage.object_url(key))
        if not created:
            logger.info("Concurrent upload of %s won the insert; dropping %s", hash_value, key)
            try:
                await self._delete_key(key)
            except UpstreamUnavailableError as exc:
                logger.warning("Orphaned object %s left in storage: %s", key, exc)
        else:
            logger.info("Uploaded %s as %s", hash_value, key)
        return row

    async def upload_image(self, content: bytes, name: str) -> File:
        image_format = validate_image(content, self.max_image_bytes)
        return await self.upload(content, f"{name}{IMAGE_EXTENSIONS[image_format]}")

    async def delete(self, file: File) -> None:
        await self._delete_key(self.storage.key_from_path(file.file_path))
        logger.info("Deleted stored object for %s", file.hash_value)

    async def _delete_key(self, key: str) -> None:
        url = self.storage.presign_delete(key, self.delete_url_ttl)
        await asyncio.to_thread(self._send, "DELETE", url, None)

    def _send(self, method: str, url: str, content: Optional[bytes]) -> None:
        try:
            response = requests.request(method, url, data=content, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"Object storage {method} failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise UpstreamUnavailableError(
                f"Object storage {method} returned {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )
