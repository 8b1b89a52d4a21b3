"""Adapter boundary around the embedded flow execution engine.

The pod controller only needs a few things from an engine: a full-replacement
``deploy``, a ``ready`` flag once it has booted, a way to run a deployed flow,
and lifecycle events when a flow starts or stops. ``FlowEngine`` captures that
capability set so the controller does not depend on any concrete engine.
"""
from __future__ import annotations

import base64
import copy
import hashlib
import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Protocol

from fastapi import APIRouter, Body

from flowpod.config import FlowEngineKind
from flowpod.logging import get_logger
from flowpod.service.errors import DeployError, NotFoundError, ServiceError
from flowpod.service.outbound import OutboundHttpClient, node_failure
from flowpod.storage.ephemeral import EphemeralStore

logger = get_logger(__name__)

FLOWS_STARTED = "flows:started"
FLOWS_STOPPED = "flows:stopped"

# Identity used for deployments that belong to no tenant (unload)
SYSTEM_USER = "__system__"

# Node type whose execution makes a tenant-authored outbound call
HTTP_REQUEST_NODE = "http request"

EventHandler = Callable[[Any], None]


class EngineEvents:
    """Minimal pub/sub hub for engine lifecycle events."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, info: Any = None) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(info)
            except Exception as exc:
                logger.error(
                    "engine_event_handler_failed",
                    engine_event=event,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )


class EditorBackend(Protocol):
    """Tenant-scoped operations the editor routes delegate to.

    Saves and runs go through the pod controller so they observe the current
    tenant assignment instead of whatever the engine last deployed.
    """

    async def save_editor_flows(self, flows: List[Dict[str, Any]]) -> int:
        ...

    async def run_flow(self, flow_id: str) -> Dict[str, Any]:
        ...


class FlowEngine(ABC):
    """Capability set the pod requires from an embedded engine."""

    def __init__(self) -> None:
        self.events = EngineEvents()

    @property
    @abstractmethod
    def ready(self) -> bool:
        """True once the engine has finished booting."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def deploy(self, graph: List[Dict[str, Any]], *, user: str) -> int:
        """Replace the running graph wholesale; return the deployed node count.

        Raises ``DeployError`` if the engine rejects the graph, leaving the
        previous deployment in place.
        """

    @abstractmethod
    async def run(self, flow_id: str) -> Dict[str, Any]:
        """Execute one deployed flow, emitting started and stopped events around it."""

    def editor_router(self, backend: EditorBackend) -> Optional[APIRouter]:
        """Routes served under the editor root, if the engine has an editor."""
        return None


def graph_revision(graph: List[Dict[str, Any]]) -> str:
    encoded = json.dumps(graph, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def _validate_graph(graph: Any) -> List[Dict[str, Any]]:
    if not isinstance(graph, list):
        raise DeployError("graph must be a list of nodes")
    seen: set[str] = set()
    for index, node in enumerate(graph):
        if not isinstance(node, dict):
            raise DeployError("graph node must be an object", detail={"index": index})
        node_id = node.get("id")
        if not isinstance(node_id, str) or not node_id:
            raise DeployError("graph node is missing an id", detail={"index": index})
        if node_id in seen:
            raise DeployError("duplicate node id in graph", detail={"id": node_id})
        seen.add(node_id)
    return graph


def _node_headers(node: Dict[str, Any], credentials: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    configured = node.get("headers")
    if isinstance(configured, dict):
        headers.update({str(k): str(v) for k, v in configured.items() if v is not None})

    auth_type = node.get("authType")
    password = credentials.get("password")
    if auth_type == "bearer" and password:
        headers["Authorization"] = f"Bearer {password}"
    elif auth_type == "basic" and credentials.get("user"):
        token = base64.b64encode(f"{credentials['user']}:{password or ''}".encode("utf-8"))
        headers["Authorization"] = f"Basic {token.decode('ascii')}"
    return headers


def _node_timeout(node: Dict[str, Any]) -> Optional[float]:
    # Editor stores the request timeout in milliseconds
    value = node.get("reqTimeout")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return value / 1000
    return None


class LocalFlowEngine(FlowEngine):
    """In-process engine that holds the deployed graph and runs its HTTP nodes.

    It reads flows and node credentials through the pod's ephemeral store,
    the same way a hosted engine would use its storage module. Every outbound
    call a node makes goes through a client from ``outbound_factory``.
    """

    def __init__(
        self,
        store: EphemeralStore,
        *,
        outbound_factory: Optional[Callable[[], OutboundHttpClient]] = None,
    ):
        super().__init__()
        self.store = store
        self._outbound_factory = outbound_factory or OutboundHttpClient
        self._ready = False
        self._deployed: List[Dict[str, Any]] = []
        self._deployed_by: str = SYSTEM_USER
        self._deploy_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def deployed_by(self) -> str:
        return self._deployed_by

    @property
    def deployed_graph(self) -> List[Dict[str, Any]]:
        with self._deploy_lock:
            return copy.deepcopy(self._deployed)

    async def start(self) -> None:
        self._ready = True
        logger.info("flow_engine_started", engine=FlowEngineKind.LOCAL.value)

    async def stop(self) -> None:
        self._ready = False
        logger.info("flow_engine_stopped", engine=FlowEngineKind.LOCAL.value)

    async def deploy(self, graph: List[Dict[str, Any]], *, user: str) -> int:
        validated = _validate_graph(graph)
        with self._deploy_lock:
            self._deployed = copy.deepcopy(validated)
            self._deployed_by = user
        logger.info(
            "flow_engine_deployed",
            deployment_type="full",
            user=user,
            node_count=len(validated),
        )
        return len(validated)

    async def run(self, flow_id: str) -> Dict[str, Any]:
        """Run the nodes of tab ``flow_id`` (or the single node with that id).

        Only ``http request`` nodes do work; a failed call is reported on the
        node and does not abort the rest of the flow.
        """

        with self._deploy_lock:
            nodes = [
                copy.deepcopy(node)
                for node in self._deployed
                if node.get("z") == flow_id or node.get("id") == flow_id
            ]
        if not nodes:
            raise NotFoundError("flow not found", detail={"flowId": flow_id})

        credentials = self.store.get_credentials()
        info = {"config": {"id": flow_id}}
        results: List[Dict[str, Any]] = []
        self.events.emit(FLOWS_STARTED, info)
        try:
            for node in nodes:
                if node.get("type") != HTTP_REQUEST_NODE:
                    continue
                node_credentials = credentials.get(node["id"])
                results.append(
                    await self._run_http_node(
                        node, node_credentials if isinstance(node_credentials, dict) else {}
                    )
                )
        finally:
            self.events.emit(FLOWS_STOPPED, info)

        logger.info(
            "flow_engine_run",
            flow_id=flow_id,
            node_count=len(nodes),
            http_calls=len(results),
            failed=sum(1 for result in results if "error" in result),
        )
        return {"flowId": flow_id, "nodes": results}

    async def _run_http_node(
        self, node: Dict[str, Any], credentials: Dict[str, Any]
    ) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {"id": node["id"]}
        url = node.get("url")
        if not isinstance(url, str) or not url.strip():
            outcome["error"] = {
                "code": "bad_request",
                "message": "http request node has no url",
                "blocked": False,
            }
            return outcome

        method = str(node.get("method") or "GET").upper()
        if method == "USE":
            method = "GET"
        payload = node.get("payload") if method not in ("GET", "HEAD", "DELETE") else None
        try:
            async with self._outbound_factory() as client:
                response = await client.request(
                    method,
                    url,
                    headers=_node_headers(node, credentials),
                    json=payload,
                    timeout=_node_timeout(node),
                )
        except ServiceError as exc:
            outcome["error"] = node_failure(exc)
            logger.warning(
                "flow_node_request_failed",
                node_id=node["id"],
                error_code=exc.error_code,
                blocked=outcome["error"]["blocked"],
            )
            return outcome

        outcome["statusCode"] = response.status_code
        return outcome

    def editor_router(self, backend: EditorBackend) -> APIRouter:
        router = APIRouter()

        @router.get("/flows")
        async def get_flows() -> Dict[str, Any]:
            flows = self.store.get_flows()
            return {"flows": flows, "rev": graph_revision(flows)}

        @router.post("/flows")
        async def save_flows(flows: List[Dict[str, Any]] = Body(..., embed=True)) -> Dict[str, Any]:
            node_count = await backend.save_editor_flows(flows)
            return {"ok": True, "nodeCount": node_count, "rev": graph_revision(flows)}

        @router.get("/settings")
        async def get_settings() -> Dict[str, Any]:
            return self.store.get_settings()

        @router.post("/flows/{flow_id}/run")
        async def run_flow(flow_id: str) -> Dict[str, Any]:
            return await backend.run_flow(flow_id)

        return router


def create_engine(
    kind: FlowEngineKind | str,
    store: EphemeralStore,
    *,
    outbound_factory: Optional[Callable[[], OutboundHttpClient]] = None,
) -> FlowEngine:
    kind = FlowEngineKind(kind)
    if kind is FlowEngineKind.LOCAL:
        return LocalFlowEngine(store, outbound_factory=outbound_factory)
    raise ValueError(f"unsupported flow engine: {kind}")


__all__ = [
    "FLOWS_STARTED",
    "FLOWS_STOPPED",
    "HTTP_REQUEST_NODE",
    "SYSTEM_USER",
    "EditorBackend",
    "EngineEvents",
    "FlowEngine",
    "LocalFlowEngine",
    "create_engine",
    "graph_revision",
]
