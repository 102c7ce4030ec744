"""Graph subscription provider.

SubscriptionProviderPort is the interface the Subscription Manager depends
on; GraphSubscriptionClient is the Microsoft Graph adapter behind it.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .auth import TokenProvider
from .errors import error_for_transport, raise_for_graph_status

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_graph_datetime(value: str) -> datetime:
    """Parse a Graph timestamp into an aware UTC datetime.

    Graph emits up to seven fractional digits and a trailing "Z", neither of
    which fromisoformat accepts on every interpreter.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


@dataclass
class ProviderSubscription:
    """Subscription as the provider reports it."""
    id: str
    resource: str
    change_type: str
    expires_at: datetime
    notification_url: Optional[str] = None
    client_state: Optional[str] = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "ProviderSubscription":
        return cls(
            id=data["id"],
            resource=data.get("resource", ""),
            change_type=data.get("changeType", ""),
            expires_at=parse_graph_datetime(data["expirationDateTime"]),
            notification_url=data.get("notificationUrl"),
            client_state=data.get("clientState"),
        )


class SubscriptionProviderPort(ABC):
    """Remote subscription registry.

    Implementations raise the GraphAPIError hierarchy; a missing remote
    subscription is always GraphNotFoundError.
    """

    @abstractmethod
    async def create(
        self,
        resource: str,
        change_type: str,
        notification_url: str,
        expires_at: datetime,
        client_state: str,
    ) -> ProviderSubscription:
        pass

    @abstractmethod
    async def renew(self, subscription_id: str, expires_at: datetime) -> ProviderSubscription:
        pass

    @abstractmethod
    async def delete(self, subscription_id: str) -> None:
        pass

    @abstractmethod
    async def get(self, subscription_id: str) -> ProviderSubscription:
        pass


class GraphClient:
    """Authenticated JSON calls against the Graph REST API."""

    def __init__(self, http_client: httpx.AsyncClient, token_provider: TokenProvider, base_url: str):
        self._http = http_client
        self._tokens = token_provider
        self._base_url = base_url.rstrip("/")

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Optional[dict]:
        """Send a request and return the decoded JSON body (None for 204).

        Raises:
            GraphAPIError: Mapped from the response status or transport failure
        """
        token = await self._tokens.get_token()
        try:
            response = await self._http.request(
                method,
                self.url(path),
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise error_for_transport(e, operation) from e

        if response.status_code == 401:
            # Token may have been revoked early; next call fetches a fresh one
            self._tokens.invalidate()
        raise_for_graph_status(response, operation)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()


class GraphSubscriptionClient(SubscriptionProviderPort):
    """Microsoft Graph /subscriptions adapter."""

    def __init__(self, graph: GraphClient):
        self._graph = graph

    async def create(self, resource, change_type, notification_url, expires_at, client_state):
        data = await self._graph.request(
            "POST",
            "subscriptions",
            operation="create subscription",
            json={
                "changeType": change_type,
                "notificationUrl": notification_url,
                "resource": resource,
                "expirationDateTime": format_graph_datetime(expires_at),
                "clientState": client_state,
            },
        )
        created = ProviderSubscription.from_graph(data)
        logger.info(
            f"Graph subscription created for {resource}",
            extra={"subscription_id": created.id},
        )
        return created

    async def renew(self, subscription_id, expires_at):
        data = await self._graph.request(
            "PATCH",
            f"subscriptions/{subscription_id}",
            operation="renew subscription",
            json={"expirationDateTime": format_graph_datetime(expires_at)},
        )
        return ProviderSubscription.from_graph(data)

    async def delete(self, subscription_id):
        await self._graph.request(
            "DELETE",
            f"subscriptions/{subscription_id}",
            operation="delete subscription",
        )

    async def get(self, subscription_id):
        data = await self._graph.request(
            "GET",
            f"subscriptions/{subscription_id}",
            operation="get subscription",
        )
        return ProviderSubscription.from_graph(data)
