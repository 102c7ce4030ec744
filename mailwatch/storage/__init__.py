"""Blob storage for relocated attachments"""

from .attachments import AttachmentStore, S3AttachmentStore, StorageError, StoredAttachment

__all__ = ["AttachmentStore", "S3AttachmentStore", "StorageError", "StoredAttachment"]
