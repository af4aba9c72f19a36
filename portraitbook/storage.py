# portraitbook/storage.py
"""Optional Cloudflare R2 (S3-compatible) storage for exported storybook PDFs."""
import logging
import uuid
from typing import Optional

import boto3
from botocore.client import Config

from portraitbook.config import Settings

logger = logging.getLogger(__name__)


class ExportStorage:
    def __init__(self, client, bucket: str, presign_expiration: int = 3600):
        self.client = client
        self.bucket = bucket
        self.presign_expiration = presign_expiration

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["ExportStorage"]:
        """None when R2 is not fully configured; exports are then streamed back directly."""
        if not (settings.r2_endpoint and settings.cf_access_key_id and settings.cf_secret_access_key):
            logger.warning("R2 not fully configured (endpoint or creds missing); exports will not be stored.")
            return None
        client = boto3.client(
            "s3",
            endpoint_url=settings.r2_endpoint,
            aws_access_key_id=settings.cf_access_key_id,
            aws_secret_access_key=settings.cf_secret_access_key,
            config=Config(signature_version="s3v4"),
        )
        logger.info("Initialized S3 client for R2 at %s", settings.r2_endpoint)
        return cls(client, settings.cf_r2_bucket_outputs, settings.presign_expiration)

    @staticmethod
    def make_key(story_id: str) -> str:
        return f"exports/{story_id}/{uuid.uuid4().hex}.pdf"

    def put_bytes(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        self.client.put_object(**kwargs)

    def presigned_get(self, key: str) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        return self.client.generate_presigned_url(ClientMethod="get_object", Params=params, ExpiresIn=self.presign_expiration)

    def store_pdf(self, story_id: str, pdf_bytes: bytes) -> dict:
        key = self.make_key(story_id)
        self.put_bytes(key, pdf_bytes, content_type="application/pdf")
        logger.info("[%s] uploaded export -> %s", story_id, key)
        return {"key": key, "download_url": self.presigned_get(key), "expires_in": self.presign_expiration}
