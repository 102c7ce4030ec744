"""Forwarding sinks.

Delivers the enriched payload either to the fixed automation endpoint or to
a rule's custom endpoint. Any non-2xx response, timeout or transport error
is a ForwardError; retries are left to reprocessing.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..models.monitoring_rule import HttpMethod, TargetService
from ..observability.metrics import forward_duration_seconds, forwards_total

logger = logging.getLogger(__name__)


class ForwardError(Exception):
    """Downstream sink did not accept the payload."""

    def __init__(self, message: str, target_url: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.target_url = target_url
        self.status_code = status_code


@dataclass
class ForwardResult:
    target_service: str
    target_url: str
    method: str
    status_code: int
    duration_ms: float


class Forwarder:

    def __init__(self, http_client: httpx.AsyncClient, automation_url: str, timeout_seconds: float = 300.0):
        self._http = http_client
        self.automation_url = automation_url
        self.timeout = httpx.Timeout(timeout_seconds)

    async def forward(
        self,
        target_service: str,
        payload: dict[str, Any],
        url: Optional[str] = None,
        method: str = HttpMethod.POST.value,
    ) -> ForwardResult:
        """Send payload to the sink for target_service.

        Args:
            target_service: "automation" or "custom"
            payload: JSON body
            url: Required for custom targets
            method: HTTP method for custom targets (automation always POSTs)

        Raises:
            ForwardError: Non-2xx, timeout or transport failure
            ValueError: Archive target or missing custom URL
        """
        if target_service == TargetService.AUTOMATION.value:
            target_url, method = self.automation_url, HttpMethod.POST.value
        elif target_service == TargetService.CUSTOM.value:
            if not url:
                raise ValueError("custom target requires a URL")
            target_url, method = url, HttpMethod(method).value
        else:
            raise ValueError(f"target {target_service!r} is not forwarded")

        start = time.perf_counter()
        try:
            response = await self._http.request(method, target_url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            forwards_total.labels(target_service=target_service, status="error").inc()
            raise ForwardError(f"Forward to {target_url} timed out", target_url) from e
        except httpx.HTTPError as e:
            forwards_total.labels(target_service=target_service, status="error").inc()
            raise ForwardError(f"Forward to {target_url} failed: {e}", target_url) from e
        finally:
            elapsed = time.perf_counter() - start
            forward_duration_seconds.labels(target_service=target_service).observe(elapsed)

        duration_ms = round(elapsed * 1000, 2)
        if not response.is_success:
            forwards_total.labels(target_service=target_service, status="error").inc()
            raise ForwardError(
                f"Forward to {target_url} returned HTTP {response.status_code}",
                target_url,
                status_code=response.status_code,
            )

        forwards_total.labels(target_service=target_service, status="success").inc()
        logger.info(
            f"Forwarded to {target_service}",
            extra={
                "target_service": target_service,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return ForwardResult(
            target_service=target_service,
            target_url=target_url,
            method=method,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
