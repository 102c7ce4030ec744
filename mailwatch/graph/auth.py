"""Client-credentials token acquisition for Microsoft Graph."""

import logging
import time
from typing import Callable, Optional

import httpx

from .errors import GraphAuthError, error_for_transport

logger = logging.getLogger(__name__)

# Refresh this many seconds before the token actually expires
TOKEN_REFRESH_MARGIN_SECONDS = 300


class TokenProvider:
    """Fetches and caches an application access token.

    The cached token is reused until it is within
    TOKEN_REFRESH_MARGIN_SECONDS of expiry.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._http = http_client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        """Return a valid access token, fetching a new one when needed.

        Raises:
            GraphAuthError: Token endpoint rejected the credentials
            GraphTransientError: Token endpoint unreachable
        """
        if self._token and self._clock() < self._expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        if not self._client_id or not self._client_secret:
            raise GraphAuthError("Graph credentials are not configured")

        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": self._scope,
                },
            )
        except httpx.HTTPError as e:
            raise error_for_transport(e, "token request") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success or "access_token" not in data:
            detail = data.get("error_description") or data.get("error") or response.text[:200]
            logger.error(
                f"Graph token request failed: {detail}",
                extra={"status_code": response.status_code},
            )
            raise GraphAuthError(
                f"Graph token request failed: {detail}",
                status_code=response.status_code, detail=detail,
            )

        self._token = data["access_token"]
        self._expires_at = self._clock() + float(data.get("expires_in", 3600))
        logger.info("Acquired Graph access token")
        return self._token
