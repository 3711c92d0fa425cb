import logging
import tempfile
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlsplit

import anyio
import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from vidproxy.config import Settings
from vidproxy.services.normalizer import VIDEO_EXTENSIONS

logger = logging.getLogger(__name__)

_SPOOL_MAX_BYTES = 32 * 1024 * 1024


class BlobStoreError(RuntimeError):
    """Raised when the S3/R2 client cannot be created."""


def create_s3_client(settings: Settings):
    try:
        client = boto3.client(
            "s3",
            endpoint_url=settings.blob_store_endpoint_url or None,
            region_name=settings.blob_store_region or None,
            aws_access_key_id=settings.blob_store_access_key_id or None,
            aws_secret_access_key=settings.blob_store_secret_access_key or None,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 5, "mode": "adaptive"},
                connect_timeout=10,
                read_timeout=60,
            ),
        )
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Failed to create S3 client for bucket %s", settings.blob_store_bucket)
        raise BlobStoreError("Unable to create S3 client. Check BLOB_STORE_* settings.") from exc
    return client


class S3BlobStore:
    """Copies finished videos from the provider's short-lived URL into our bucket."""

    def __init__(self, settings: Settings, s3_client=None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.bucket = settings.blob_store_bucket
        self._s3 = s3_client or create_s3_client(settings)
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds, read=120.0), follow_redirects=True
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def object_key(self, job_id: str, source_url: str) -> str:
        suffix = PurePosixPath(urlsplit(source_url).path).suffix.lstrip(".").lower()
        ext = suffix if suffix in VIDEO_EXTENSIONS else "mp4"
        name = f"{job_id}.{ext}"
        return f"{self.settings.blob_store_prefix}/{name}" if self.settings.blob_store_prefix else name

    def url_for(self, key: str) -> str:
        if self.settings.blob_store_public_base_url:
            return f"{self.settings.blob_store_public_base_url}/{key}"
        return self._s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.settings.blob_store_url_expiry_seconds,
        )

    async def persist(self, job_id: str, source_url: str) -> str:
        """Return a durable URL for ``source_url``; on failure the source URL is returned unchanged."""
        key = self.object_key(job_id, source_url)
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as buffer:
            try:
                async with self._http.stream("GET", source_url) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "video/mp4").split(";")[0]
                    async for chunk in response.aiter_bytes():
                        buffer.write(chunk)
                buffer.seek(0)
                await anyio.to_thread.run_sync(self._put, buffer, key, content_type)
                url = self.url_for(key)
            except httpx.HTTPError as exc:
                logger.warning("Could not download %s for job %s: %s", source_url, job_id, exc)
                return source_url
            except (ClientError, BotoCoreError):
                logger.exception("Failed to store video for job %s in %s/%s", job_id, self.bucket, key)
                return source_url
        logger.info("Stored video for job %s at s3://%s/%s", job_id, self.bucket, key)
        return url

    def _put(self, body, key: str, content_type: str) -> None:
        self._s3.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
