"""Attachment relocation to S3-compatible object storage.

Attachments pulled from a message are uploaded under a dated key and handed
downstream as presigned GET URLs, so sinks never need Graph access.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from ..config import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


@dataclass
class StoredAttachment:
    name: str
    content_type: str
    size: int
    storage_key: str
    url: str


class AttachmentStore(ABC):

    @abstractmethod
    async def upload_attachment(
        self,
        data: bytes,
        name: str,
        content_type: str,
        prefix: Optional[str] = None,
    ) -> StoredAttachment:
        """Store the attachment and return it with a download URL.

        Raises:
            StorageError: Upload or URL generation failed
        """


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name or "").strip("._")
    return cleaned or "attachment"


class S3AttachmentStore(AttachmentStore):
    """S3-compatible attachment store using boto3.

    boto3 is synchronous; calls run in a worker thread so the event loop
    keeps serving webhooks.

    Storage key format: attachments/{prefix}/{year}/{month}/{uuid}_{filename}
    """

    def __init__(
        self,
        endpoint_url: Optional[str],
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = "us-east-1",
        url_expiry_seconds: int = 7 * 24 * 3600,
    ):
        """Initialize S3 attachment store.

        Args:
            endpoint_url: S3 endpoint URL (None for AWS S3, URL for MinIO)
            access_key: S3 access key ID
            secret_key: S3 secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: 'us-east-1')
            url_expiry_seconds: Lifetime of generated download URLs

        Raises:
            StorageError: If S3 client initialization fails
        """
        try:
            self.s3_client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
        except NoCredentialsError as e:
            raise StorageError(f"Invalid S3 credentials: {e}")
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

        self.bucket_name = bucket_name
        self.region = region
        self.url_expiry_seconds = url_expiry_seconds
        logger.info(
            f"Initialized S3 attachment store: bucket={bucket_name}, "
            f"endpoint={endpoint_url or 'AWS S3'}, region={region}"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3AttachmentStore":
        return cls(
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key=settings.S3_ACCESS_KEY_ID,
            secret_key=settings.S3_SECRET_ACCESS_KEY,
            bucket_name=settings.S3_BUCKET_NAME,
            region=settings.S3_REGION,
            url_expiry_seconds=settings.ATTACHMENT_URL_EXPIRY_SECONDS,
        )

    def _generate_storage_key(self, name: str, prefix: Optional[str]) -> str:
        now = datetime.now(timezone.utc)
        parts = ["attachments"]
        if prefix:
            parts.append(safe_filename(prefix))
        parts.extend([f"{now.year:04d}", f"{now.month:02d}", f"{uuid4().hex}_{safe_filename(name)}"])
        return "/".join(parts)

    def _upload(self, data: bytes, name: str, content_type: str, prefix: Optional[str]) -> StoredAttachment:
        storage_key = self._generate_storage_key(name, prefix)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=storage_key,
                Body=BytesIO(data),
                ContentType=content_type,
                Metadata={"original_filename": safe_filename(name)},
            )
            url = self.s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": storage_key},
                ExpiresIn=self.url_expiry_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Attachment upload failed: storage_key={storage_key}, error={e}")
            raise StorageError(f"Failed to upload attachment {name}: {e}") from e

        logger.info(f"Uploaded attachment: storage_key={storage_key}, size={len(data)}")
        return StoredAttachment(
            name=name,
            content_type=content_type,
            size=len(data),
            storage_key=storage_key,
            url=url,
        )

    async def upload_attachment(self, data, name, content_type, prefix=None):
        return await asyncio.to_thread(self._upload, data, name, content_type, prefix)
