"""Message summary retrieval from Graph.

Only what the pipeline needs is fetched: sender, subject, body preview and
file attachments. Full MIME content is never requested.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from .client import GraphClient

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = "id,subject,from,bodyPreview,hasAttachments,receivedDateTime,internetMessageId"
FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"


@dataclass
class MessageAttachment:
    name: str
    content_type: str
    size: int
    content: bytes = field(repr=False, default=b"")


@dataclass
class MessageSummary:
    message_id: str
    sender: str
    subject: str
    body_preview: str
    received_at: Optional[str] = None
    attachments: list[MessageAttachment] = field(default_factory=list)


class MailReaderPort(ABC):

    @abstractmethod
    async def get_message_summary(self, mailbox: str, resource_path: str) -> MessageSummary:
        """Fetch the summary of the message a notification points at.

        Raises:
            GraphAPIError: Message could not be read
        """


class GraphMailReader(MailReaderPort):

    def __init__(self, graph: GraphClient):
        self._graph = graph

    async def get_message_summary(self, mailbox: str, resource_path: str) -> MessageSummary:
        message = await self._graph.request(
            "GET",
            resource_path,
            operation="read message",
            params={"$select": MESSAGE_FIELDS},
        ) or {}

        sender = ((message.get("from") or {}).get("emailAddress") or {}).get("address", "")

        attachments: list[MessageAttachment] = []
        if message.get("hasAttachments"):
            attachments = await self._get_attachments(resource_path)

        return MessageSummary(
            message_id=message.get("id", ""),
            sender=sender,
            subject=message.get("subject") or "",
            body_preview=message.get("bodyPreview") or "",
            received_at=message.get("receivedDateTime"),
            attachments=attachments,
        )

    async def _get_attachments(self, resource_path: str) -> list[MessageAttachment]:
        data = await self._graph.request(
            "GET",
            f"{resource_path}/attachments",
            operation="read attachments",
        ) or {}

        attachments = []
        for item in data.get("value", []):
            # Item and reference attachments carry no inline bytes
            if item.get("@odata.type") != FILE_ATTACHMENT_TYPE:
                continue
            try:
                content = base64.b64decode(item.get("contentBytes") or "")
            except (binascii.Error, ValueError):
                logger.warning(f"Skipping undecodable attachment {item.get('name')}")
                continue
            attachments.append(MessageAttachment(
                name=item.get("name") or "attachment",
                content_type=item.get("contentType") or "application/octet-stream",
                size=int(item.get("size") or len(content)),
                content=content,
            ))
        return attachments
