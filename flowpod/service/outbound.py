"""HTTP client used by flow nodes for tenant-authored outbound calls."""
from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urljoin

import httpx

from flowpod.logging import get_logger
from flowpod.service.egress import EgressBlockedError, EgressGuard, get_default_guard
from flowpod.service.errors import ServiceError

logger = get_logger(__name__)

# Upper bound on any single node's request timeout
MAX_OUTBOUND_TIMEOUT_SECONDS = 120.0

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# Headers that carry the caller's credentials; never forwarded to another origin
_CREDENTIAL_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization", "x-api-key"})


def _origin(url: str) -> Optional[tuple[str, str, Optional[int]]]:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return None
    return parsed.scheme, parsed.host, parsed.port


def _strip_credentials(headers: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
    if not headers:
        return headers
    return {name: value for name, value in headers.items() if name.lower() not in _CREDENTIAL_HEADERS}


class OutboundRequestError(ServiceError):
    """Transport-level failure of an outbound call (timeout, refused, TLS)."""

    status_code = 502
    error_code = "network_error"


class OutboundHttpClient:
    """HTTP client enforcing the egress guard on every hop.

    Redirects are followed manually so each ``Location`` is checked before
    it is requested. Credential headers are dropped once a redirect leaves
    the original scheme, host and port.
    """

    def __init__(
        self,
        guard: Optional[EgressGuard] = None,
        *,
        timeout: float = 30.0,
        max_redirects: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.guard = guard or get_default_guard()
        self.timeout = min(timeout, MAX_OUTBOUND_TIMEOUT_SECONDS)
        self.max_redirects = max_redirects
        self._client = httpx.AsyncClient(transport=transport, follow_redirects=False)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
        content: Any = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        method = method.upper()
        effective_timeout = min(timeout or self.timeout, MAX_OUTBOUND_TIMEOUT_SECONDS)
        current_url = url
        for hop in range(self.max_redirects + 1):
            await self.guard.check(current_url)
            try:
                response = await self._client.request(
                    method,
                    current_url,
                    headers=headers,
                    json=json,
                    content=content,
                    timeout=effective_timeout,
                )
            except httpx.TimeoutException as exc:
                raise OutboundRequestError("outbound request timed out") from exc
            except httpx.HTTPError as exc:
                raise OutboundRequestError(f"outbound request failed: {exc}") from exc

            location = response.headers.get("location")
            if response.status_code not in _REDIRECT_STATUSES or not location:
                return response
            if hop == self.max_redirects:
                break

            await response.aclose()
            next_url = urljoin(str(response.url), location)
            if _origin(next_url) != _origin(current_url):
                headers = _strip_credentials(headers)
            current_url = next_url
            if response.status_code == 303 or (
                response.status_code in (301, 302) and method == "POST"
            ):
                method = "GET"
                json = None
                content = None
            logger.debug("outbound_redirect", hop=hop + 1, status=response.status_code)

        raise OutboundRequestError(
            "too many redirects", detail={"max_redirects": self.max_redirects}
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OutboundHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def node_failure(exc: Exception) -> dict[str, Any]:
    """Describe an outbound failure as the node-level error shown to the tenant.

    A blocked call is reported as an explicit policy block so it is never
    mistaken for a transient network fault.
    """

    if isinstance(exc, EgressBlockedError):
        return {
            "code": exc.error_code,
            "message": exc.message,
            "blocked": True,
            "reason": exc.decision.reason,
        }
    if isinstance(exc, ServiceError):
        return {"code": exc.error_code, "message": exc.message, "blocked": False}
    return {"code": "network_error", "message": str(exc) or type(exc).__name__, "blocked": False}


__all__ = [
    "MAX_OUTBOUND_TIMEOUT_SECONDS",
    "OutboundHttpClient",
    "OutboundRequestError",
    "node_failure",
]
