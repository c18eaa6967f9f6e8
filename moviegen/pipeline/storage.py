"""
Cloudflare R2 artifact storage.

Vendors that answer with raw bytes (voice synthesis) have their output
uploaded here so every artifact the pipeline records is a public URL:

  audio/voice/{voice_id}/{digest}.mp3

R2 speaks the S3 API; boto3 is synchronous, so uploads run in a thread.
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..providers.errors import VendorUnavailable
from ..settings import WorkerSettings

logger = logging.getLogger(__name__)


class R2ArtifactStore:
    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        public_url: str,
        client=None,
    ):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> Optional["R2ArtifactStore"]:
        if not settings.r2_configured:
            return None
        return cls(
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket=settings.r2_bucket_name,
            public_url=settings.r2_public_url,
        )

    def public_url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def _put(self, key: str, data: bytes, content_type: str):
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    async def upload(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Upload bytes and return the public URL.

        Raises:
            VendorUnavailable: R2 rejected or could not be reached.
        """
        try:
            await asyncio.to_thread(self._put, key, data, content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise VendorUnavailable(f"upload of {key} failed: {e}", vendor="r2")

        url = self.public_url_for(key)
        logger.info(f"Uploaded to R2: {url} ({len(data)} bytes)")
        return url
