from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    rendered into the error envelope:
    - auth_failed (403)
    - bad_request (400)
    - not_found (404)
    - payload_too_large (413)
    - bridge_init_failed (500)
    - deploy_failed (500)
    - ssrf_blocked (403)
    - network_error / gateway_error (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Required fields missing or malformed (400). Not retryable as-is."""
    status_code = 400
    error_code = "bad_request"


class NotFoundError(ServiceError):
    """Requested flow or node is not in the deployed graph (404)."""
    status_code = 404
    error_code = "not_found"


class AuthFailedError(ServiceError):
    """Pod secret mismatch (403). Hard rejection, never retried."""
    status_code = 403
    error_code = "auth_failed"


class PayloadTooLargeError(ServiceError):
    """Management request body over the configured limit (413)."""
    status_code = 413
    error_code = "payload_too_large"


class BridgeInitError(ServiceError):
    """Gateway bridge could not be initialized (500); tenant left unchanged."""
    status_code = 500
    error_code = "bridge_init_failed"


class DeployError(ServiceError):
    """Embedded engine rejected a graph deployment (500)."""
    status_code = 500
    error_code = "deploy_failed"


class GatewayError(ServiceError):
    """Call through the gateway bridge failed (502)."""
    status_code = 502
    error_code = "gateway_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "NotFoundError",
    "AuthFailedError",
    "PayloadTooLargeError",
    "BridgeInitError",
    "DeployError",
    "GatewayError",
    "ServerError",
]
