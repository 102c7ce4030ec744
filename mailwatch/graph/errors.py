"""Graph API error taxonomy.

All HTTP status → exception mapping for Graph calls lives in
error_for_status(); callers never inspect status codes themselves.
"""

from typing import Optional

import httpx


class GraphAPIError(Exception):
    """Base exception for Microsoft Graph failures.

    Attributes:
        status_code: HTTP status returned by Graph (None for transport errors)
        detail: Provider error message, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class GraphAuthError(GraphAPIError):
    """Credentials rejected or token endpoint failure. Fatal, surfaced to operators."""


class GraphPermissionError(GraphAPIError):
    """Application lacks the required Graph permission (403). Not retried."""


class GraphNotFoundError(GraphAPIError):
    """Resource absent at the provider (404)."""


class GraphTransientError(GraphAPIError):
    """Throttling (429), server error (5xx), timeout or transport failure.

    Retried only by the next scheduled cycle, never inline.
    """


def _extract_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("code")
        return body.get("error_description") or (error if isinstance(error, str) else None)
    return None


def error_for_status(status_code: int, operation: str, detail: Optional[str] = None) -> GraphAPIError:
    """Map an HTTP status from Graph to the matching exception.

    Args:
        status_code: HTTP status code
        operation: Short label for the failed call (e.g. "renew subscription")
        detail: Provider error message

    Returns:
        GraphAPIError: The most specific subclass for the status
    """
    suffix = f": {detail}" if detail else ""
    if status_code == 401:
        return GraphAuthError(
            f"Graph authentication failed during {operation}{suffix}",
            status_code=status_code, detail=detail,
        )
    if status_code == 403:
        return GraphPermissionError(
            f"Graph permission denied during {operation}{suffix}",
            status_code=status_code, detail=detail,
        )
    if status_code == 404:
        return GraphNotFoundError(
            f"Graph resource not found during {operation}{suffix}",
            status_code=status_code, detail=detail,
        )
    if status_code == 429 or status_code >= 500:
        return GraphTransientError(
            f"Graph unavailable during {operation} (HTTP {status_code}){suffix}",
            status_code=status_code, detail=detail,
        )
    return GraphAPIError(
        f"Graph request failed during {operation} (HTTP {status_code}){suffix}",
        status_code=status_code, detail=detail,
    )


def raise_for_graph_status(response: httpx.Response, operation: str) -> None:
    """Raise the mapped GraphAPIError if response is not 2xx."""
    if response.is_success:
        return
    raise error_for_status(response.status_code, operation, _extract_detail(response))


def error_for_transport(exc: httpx.HTTPError, operation: str) -> GraphTransientError:
    """Wrap a timeout or transport failure as a transient error."""
    kind = "timed out" if isinstance(exc, httpx.TimeoutException) else "transport error"
    return GraphTransientError(f"Graph {operation} {kind}: {exc}")
