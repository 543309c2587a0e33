"""Cloudflare R2 archive for raw webhook payloads (S3-compatible API)"""
import logging
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


def build_payload_key(provider: str, event_id: str) -> str:
    """Object key for an event's raw body, e.g. ``webhooks/stripe/evt_123.json``

    The event id is URL-quoted so provider ids can never escape the prefix.
    """
    if not provider or not event_id:
        raise ValueError("provider and event_id are required")
    return f"webhooks/{quote(provider, safe='')}/{quote(event_id, safe='')}.json"


class PayloadArchive:
    """Stores and fetches raw webhook bodies in R2

    The database keeps only ``payload_hash`` and ``payload_pointer``; the body
    itself lives here so manual replay can re-run the exact bytes.
    """

    def __init__(self, s3_client=None, bucket: Optional[str] = None):
        """Initialize with an explicit client, or build one from settings

        Raises:
            ValueError: If R2 configuration is missing and no client was given
        """
        if s3_client is None:
            if not settings.r2_configured:
                raise ValueError(
                    "R2 configuration is missing. Set R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY, "
                    "R2_BUCKET_NAME and R2_ENDPOINT_URL environment variables."
                )
            s3_client = boto3.client(
                's3',
                endpoint_url=settings.R2_ENDPOINT_URL,
                aws_access_key_id=settings.R2_ACCESS_KEY_ID,
                aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
                config=Config(signature_version='s3v4')
            )
        self.s3_client = s3_client
        self.bucket = bucket or settings.R2_BUCKET_NAME

    def store(self, provider: str, event_id: str, raw_body: bytes) -> Optional[str]:
        """Upload raw_body; returns the object key, or None if the upload failed"""
        object_key = build_payload_key(provider, event_id)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=raw_body,
                ContentType="application/json"
            )
            logger.debug(f"Archived webhook payload {object_key} ({len(raw_body)} bytes)")
            return object_key
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to archive webhook payload {object_key}: {e}", exc_info=True)
            return None

    def fetch(self, object_key: str) -> Optional[bytes]:
        """Download an archived body; None if it does not exist"""
        if not object_key:
            return None
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=object_key)
            return response["Body"].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey'):
                logger.warning(f"Archived payload not found in R2: {object_key}")
                return None
            raise

    def delete(self, object_key: str) -> bool:
        """Delete an archived body; True if deleted or already gone"""
        if not object_key:
            return False
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=object_key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchKey':
                return True
            logger.error(f"Failed to delete archived payload {object_key}: {e}", exc_info=True)
            return False


def get_payload_archive() -> Optional[PayloadArchive]:
    """Build a PayloadArchive for this request, or None when R2 is not configured"""
    if not settings.r2_configured:
        return None
    return PayloadArchive()
