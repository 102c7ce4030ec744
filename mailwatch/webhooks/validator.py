"""Notification Validator.

Turns an incoming webhook request into either a validation handshake or a
batch of well-formed change notifications. Malformed elements are logged
and dropped; they never fail the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from ..observability.metrics import notifications_dropped_total

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("subscriptionId", "resource", "changeType", "clientState")


class InvalidWebhookPayload(Exception):
    """Request body is not a notification batch."""


@dataclass
class ChangeNotification:
    """One validated element of a notification batch."""
    subscription_id: str
    resource: str
    change_type: str
    client_state: str
    tenant_id: Optional[str] = None
    subscription_expiration: Optional[str] = None
    resource_data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def message_id(self) -> str:
        """Message id from resourceData, else the last segment after /messages/."""
        if self.resource_data.get("id"):
            return str(self.resource_data["id"])
        lowered = self.resource.lower()
        marker = "/messages/"
        position = lowered.rfind(marker)
        if position == -1:
            return ""
        return self.resource[position + len(marker):].strip("/")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeNotification":
        resource_data = data.get("resourceData")
        return cls(
            subscription_id=data["subscriptionId"],
            resource=data["resource"],
            change_type=data["changeType"],
            client_state=data["clientState"],
            tenant_id=data.get("tenantId"),
            subscription_expiration=data.get("subscriptionExpirationDateTime"),
            resource_data=resource_data if isinstance(resource_data, dict) else {},
            raw=data,
        )


@dataclass
class Handshake:
    token: str


@dataclass
class NotificationBatch:
    notifications: list[ChangeNotification]
    dropped: int = 0


def _missing_fields(item: dict[str, Any]) -> list[str]:
    return [
        name for name in REQUIRED_FIELDS
        if not isinstance(item.get(name), str) or not item.get(name).strip()
    ]


def validate_webhook(query_params: Mapping[str, str], body: Any) -> Union[Handshake, NotificationBatch]:
    """Classify a webhook request.

    Args:
        query_params: Request query parameters
        body: Parsed JSON body (ignored for handshakes)

    Returns:
        Handshake when a validationToken is present, else NotificationBatch

    Raises:
        InvalidWebhookPayload: Body is not an object with a "value" list
    """
    token = query_params.get("validationToken")
    if token is not None:
        return Handshake(token=token)

    if not isinstance(body, dict) or not isinstance(body.get("value"), list):
        raise InvalidWebhookPayload("Expected a JSON object with a 'value' array")

    notifications = []
    dropped = 0
    for index, item in enumerate(body["value"]):
        if not isinstance(item, dict):
            logger.warning(f"Dropping notification #{index}: not an object")
            dropped += 1
            continue
        missing = _missing_fields(item)
        if missing:
            logger.warning(
                f"Dropping notification #{index}: missing {', '.join(missing)}",
                extra={"subscription_id": item.get("subscriptionId")},
            )
            dropped += 1
            continue
        notifications.append(ChangeNotification.from_dict(item))

    if dropped:
        notifications_dropped_total.inc(dropped)
    return NotificationBatch(notifications=notifications, dropped=dropped)
