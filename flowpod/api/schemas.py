from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowpod.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "auth_failed",
    "bad_request",
    "bridge_init_failed",
    "deploy_failed",
    "gateway_error",
    "method_not_allowed",
    "network_error",
    "not_found",
    "payload_too_large",
    "server_error",
    "ssrf_blocked",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Error envelope returned by every failing endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoadFlowsRequest(BaseModel):
    """Body of ``POST /load-flows``.

    Every field is untyped at the schema level: the controller checks the
    secret before it checks shape or bounds, so a bad secret is always a 403.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[Any] = Field(default=None, alias="userId")
    flows: Optional[Any] = None
    gateway_url: Optional[Any] = Field(default=None, alias="gatewayUrl")
    pod_secret: Optional[Any] = Field(default=None, alias="podSecret")
    credentials: Optional[Any] = None
    settings: Optional[Any] = None


class LoadFlowsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    node_count: int = Field(..., alias="nodeCount")


class UnloadFlowsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pod_secret: Optional[Any] = Field(default=None, alias="podSecret")


class UnloadFlowsResponse(BaseModel):
    ok: bool = True


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    nr_ready: bool = Field(..., alias="nrReady")
    user_id: Optional[str] = Field(default=None, alias="userId")
    uptime: float
    pod_name: str = Field(..., alias="podName")


class ActivityResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_activity: int = Field(..., alias="lastActivity", description="Epoch milliseconds")
    user_id: Optional[str] = Field(default=None, alias="userId")
    flows_running: int = Field(..., alias="flowsRunning")
    idle_ms: int = Field(..., alias="idleMs")
    memory_mb: int = Field(..., alias="memoryMb")
