from __future__ import annotations

import json
from typing import Any, Dict, Type, TypeVar

from fastapi import APIRouter, Request
from pydantic import BaseModel, ValidationError

from flowpod.api.schemas import (
    ActivityResponse,
    HealthResponse,
    LoadFlowsRequest,
    LoadFlowsResponse,
    UnloadFlowsRequest,
    UnloadFlowsResponse,
)
from flowpod.logging import get_logger
from flowpod.service.errors import BadRequestError, PayloadTooLargeError
from flowpod.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

ModelT = TypeVar("ModelT", bound=BaseModel)


async def _read_management_body(request: Request, model: Type[ModelT], max_bytes: int) -> ModelT:
    """Read and validate a management request body, bounded by ``max_bytes``.

    Bodies with an oversized Content-Length are refused by middleware before
    they get here; this guards chunked uploads that declare no length.
    """

    raw = b""
    async for chunk in request.stream():
        raw += chunk
        if len(raw) > max_bytes:
            raise PayloadTooLargeError(
                "request body too large", detail={"limit_bytes": max_bytes}
            )
    try:
        data: Any = json.loads(raw) if raw else {}
    except ValueError as exc:
        raise BadRequestError("request body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise BadRequestError("request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        raise BadRequestError("invalid request body", detail={"errors": errors}) from exc


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    snapshot = get_runtime().controller.health()
    return HealthResponse(
        ok=True,
        nr_ready=snapshot.ready,
        user_id=snapshot.current_tenant,
        uptime=snapshot.uptime,
        pod_name=snapshot.pod_name,
    )


@router.get("/activity", response_model=ActivityResponse)
async def activity() -> ActivityResponse:
    snapshot = get_runtime().controller.activity()
    return ActivityResponse(
        last_activity=snapshot.last_activity_at,
        user_id=snapshot.current_tenant,
        flows_running=snapshot.running_flow_count,
        idle_ms=snapshot.idle_ms,
        memory_mb=snapshot.memory_mb,
    )


@router.post("/load-flows", response_model=LoadFlowsResponse)
async def load_flows(request: Request) -> LoadFlowsResponse:
    runtime = get_runtime()
    body = await _read_management_body(request, LoadFlowsRequest, runtime.settings.max_load_bytes)
    node_count = await runtime.controller.load_graph(
        body.user_id,
        body.flows,
        body.gateway_url,
        body.pod_secret,
        credentials=body.credentials,
        settings=body.settings,
    )
    return LoadFlowsResponse(ok=True, node_count=node_count)


@router.post("/unload-flows", response_model=UnloadFlowsResponse)
async def unload_flows(request: Request) -> Dict[str, bool]:
    runtime = get_runtime()
    body = await _read_management_body(
        request, UnloadFlowsRequest, runtime.settings.max_load_bytes
    )
    await runtime.controller.unload_graph(body.pod_secret)
    return {"ok": True}
