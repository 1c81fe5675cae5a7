# app/services/upstream.py
"""
Downstream service invocation.

The paid service is called exactly once per settlement attempt, with the
caller's body and the X-PAYMENT header forwarded as proof of payment.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from app.core.config import ResourceConfig, settings

logger = logging.getLogger(__name__)

X_PAYMENT_HEADER = "X-PAYMENT"

# Hop-by-hop and framing headers are not forwarded.
_SKIP_HEADERS = frozenset({
    "host", "content-length", "connection", "transfer-encoding",
    "keep-alive", "accept-encoding", "x-payment",
})


class ServiceUnreachableError(Exception):
    """The downstream service timed out or could not be connected to."""


@dataclass
class ServiceResponse:
    status_code: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return "application/json"


def resolve_upstream(resource: ResourceConfig, base_url: Optional[str] = None) -> str:
    """Resolve a resource's upstream against X402_UPSTREAM_BASE_URL when relative."""
    upstream = resource.upstream
    if upstream.startswith(("http://", "https://")):
        return upstream
    base = (base_url or settings.X402_UPSTREAM_BASE_URL).rstrip("/") + "/"
    return urljoin(base, upstream.lstrip("/"))


def _forwarded_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    if not headers:
        return {}
    return {k: v for k, v in headers.items() if k.lower() not in _SKIP_HEADERS}


class HttpServiceInvoker:
    """Calls downstream services over HTTP with requests."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def invoke(
        self,
        url: str,
        body: bytes,
        headers: Optional[Dict[str, str]],
        payment_header: str,
        timeout: float,
    ) -> ServiceResponse:
        """
        POST the request body to the downstream service.

        Args:
            url: Absolute downstream URL
            body: Raw request body to forward
            headers: Caller headers (filtered before forwarding)
            payment_header: The caller's X-PAYMENT header value
            timeout: Seconds before the call is abandoned

        Returns:
            ServiceResponse, including non-2xx responses

        Raises:
            ServiceUnreachableError: On timeout or connection failure
        """
        forward: Dict[str, Any] = _forwarded_headers(headers)
        forward[X_PAYMENT_HEADER] = payment_header
        forward.setdefault("Content-Type", "application/json")

        start = time.monotonic()
        try:
            response = self.session.post(url, data=body, headers=forward, timeout=timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Downstream service timed out after {timeout}s: {url}")
            raise ServiceUnreachableError(f"Service at {url} timed out after {timeout}s") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"Downstream service unreachable: {url}: {e}")
            raise ServiceUnreachableError(f"Service at {url} is unreachable: {e}") from e
        latency_ms = (time.monotonic() - start) * 1000

        logger.info(f"Downstream {url} returned {response.status_code} in {latency_ms:.0f}ms")
        return ServiceResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
            latency_ms=latency_ms,
        )

    def close(self) -> None:
        self.session.close()
