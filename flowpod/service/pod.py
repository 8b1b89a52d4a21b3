"""Pod runtime controller.

Owns the per-pod state (tenant assignment, ephemeral store, running flows,
activity) and drives the embedded engine through load and unload. Load,
unload and editor saves are serialized behind one lock; health and activity
are lock-free snapshots.

State machine::

    UNASSIGNED --load--> ASSIGNED(t)
    ASSIGNED(t) --load(t2)--> ASSIGNED(t2)   prior flows and state cleared first
    ASSIGNED(t) --unload--> UNASSIGNED
    UNASSIGNED --unload--> UNASSIGNED
    any --bad secret--> unchanged
"""
from __future__ import annotations

import asyncio
import hmac
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import psutil

from flowpod.logging import get_logger, mask_url_password
from flowpod.service.bridge import GatewayBridge
from flowpod.service.engine import FLOWS_STARTED, FLOWS_STOPPED, SYSTEM_USER, FlowEngine
from flowpod.service.errors import (
    AuthFailedError,
    BadRequestError,
    BridgeInitError,
    DeployError,
)
from flowpod.service.tracking import ActivityTracker, RunningFlowSet
from flowpod.storage.ephemeral import EphemeralStore
from flowpod.storage.models import EphemeralState

logger = get_logger(__name__)

BridgeFactory = Callable[[str, str, str], GatewayBridge]

MAX_TENANT_ID_LENGTH = 256
MAX_GATEWAY_URL_LENGTH = 2048
# Maximum nesting depth accepted in tenant-supplied credentials and settings
MAX_JSON_DEPTH = 32


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject documents nested deeper than ``max_depth``.

    Raises:
        ValueError: If depth exceeds maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _bounded_text(value: Any, field_name: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"{field_name} must be a string", detail={"field": field_name})
    if len(value) > max_length:
        raise BadRequestError(
            f"{field_name} is too long",
            detail={"field": field_name, "max_length": max_length},
        )
    return value


def _bounded_document(value: Any, field_name: str) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise BadRequestError(f"{field_name} must be an object", detail={"field": field_name})
    try:
        _validate_json_depth(value)
    except ValueError as exc:
        raise BadRequestError(str(exc), detail={"field": field_name}) from exc
    return value


@dataclass
class Pod:
    pod_name: str
    current_tenant: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class HealthSnapshot:
    ready: bool
    current_tenant: Optional[str]
    uptime: float
    pod_name: str


@dataclass(frozen=True)
class ActivitySnapshot:
    last_activity_at: int
    current_tenant: Optional[str]
    running_flow_count: int
    idle_ms: int
    memory_mb: int


def process_memory_mb() -> int:
    return round(psutil.Process().memory_info().rss / 1024 / 1024)


class PodController:
    """Management operations for a single pod."""

    def __init__(
        self,
        pod: Pod,
        *,
        engine: FlowEngine,
        store: EphemeralStore,
        pod_secret: Optional[str],
        bridge_factory: Optional[BridgeFactory] = None,
        activity: Optional[ActivityTracker] = None,
        running: Optional[RunningFlowSet] = None,
        memory_probe: Callable[[], int] = process_memory_mb,
    ):
        self.pod = pod
        self.engine = engine
        self.store = store
        self.activity_tracker = activity or ActivityTracker()
        self.running = running or RunningFlowSet()
        self._pod_secret = pod_secret
        self._bridge_factory = bridge_factory or GatewayBridge
        self._memory_probe = memory_probe
        self._bridge: Optional[GatewayBridge] = None
        self._lock = asyncio.Lock()

        self.engine.events.on(FLOWS_STARTED, self._on_flow_started)
        self.engine.events.on(FLOWS_STOPPED, self._on_flow_stopped)

    @property
    def bridge(self) -> Optional[GatewayBridge]:
        return self._bridge

    def _authorize(self, provided: Any) -> None:
        expected = self._pod_secret
        if (
            not expected
            or not isinstance(provided, str)
            or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
        ):
            logger.warning(
                "pod_auth_failed",
                pod_name=self.pod.pod_name,
                secret_configured=bool(expected),
            )
            raise AuthFailedError("invalid pod secret")

    def _on_flow_started(self, info: Any) -> None:
        flow_id = self.running.on_started(info)
        logger.debug("flow_started", flow_id=flow_id, running=len(self.running))

    def _on_flow_stopped(self, info: Any) -> None:
        flow_id = self.running.on_stopped(info)
        logger.debug("flow_stopped", flow_id=flow_id, running=len(self.running))

    async def load_graph(
        self,
        tenant_id: Any,
        graph: Optional[List[Dict[str, Any]]],
        gateway_url: Any,
        pod_secret: Optional[str],
        *,
        credentials: Any = None,
        settings: Any = None,
    ) -> int:
        """Assign the pod to ``tenant_id`` and deploy ``graph``; return the node count."""

        self._authorize(pod_secret)
        tenant_id = _bounded_text(tenant_id, "userId", MAX_TENANT_ID_LENGTH)
        gateway_url = _bounded_text(gateway_url, "gatewayUrl", MAX_GATEWAY_URL_LENGTH)
        if not tenant_id or not tenant_id.strip() or not gateway_url or not gateway_url.strip():
            raise BadRequestError("userId and gatewayUrl required")
        graph = [] if graph is None else graph
        if not isinstance(graph, list):
            raise BadRequestError("flows must be a list of nodes")
        credentials = _bounded_document(credentials, "credentials")
        settings = _bounded_document(settings, "settings")

        async with self._lock:
            bridge = self._bridge_factory(gateway_url, tenant_id, pod_secret)
            try:
                await bridge.start()
            except BridgeInitError as exc:
                logger.error(
                    "pod_bridge_init_failed",
                    tenant_id=tenant_id,
                    gateway_url=mask_url_password(gateway_url),
                    error=exc.message,
                )
                raise
            except Exception as exc:
                logger.error(
                    "pod_bridge_init_failed",
                    tenant_id=tenant_id,
                    gateway_url=mask_url_password(gateway_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise BridgeInitError(f"bridge initialization failed: {exc}") from exc

            previous = self.pod.current_tenant
            if previous is not None and previous != tenant_id:
                cleared = self.running.clear()
                self.store.clear()
                logger.info(
                    "pod_reuse_sanitized",
                    previous_tenant=previous,
                    tenant_id=tenant_id,
                    flows_cleared=cleared,
                )

            try:
                node_count = await self.engine.deploy(graph, user=tenant_id)
            except Exception as exc:
                await bridge.close()
                if isinstance(exc, DeployError):
                    raise
                raise DeployError(f"graph deployment failed: {exc}") from exc

            self.store.replace(
                EphemeralState.build(graph, credentials=credentials, settings=settings)
            )
            old_bridge, self._bridge = self._bridge, bridge
            self.pod.current_tenant = tenant_id
            self.activity_tracker.touch()
            if old_bridge is not None:
                await old_bridge.close()

        logger.info(
            "pod_graph_loaded",
            pod_name=self.pod.pod_name,
            tenant_id=tenant_id,
            node_count=node_count,
        )
        return node_count

    async def unload_graph(self, pod_secret: Optional[str]) -> None:
        """Release the pod: clear tenant, flows and state, deploy an empty graph."""

        self._authorize(pod_secret)
        async with self._lock:
            previous = self.pod.current_tenant
            self.pod.current_tenant = None
            cleared = self.running.clear()
            self.store.clear()
            bridge, self._bridge = self._bridge, None
            if bridge is not None:
                await bridge.close()
            try:
                await self.engine.deploy([], user=SYSTEM_USER)
            except Exception as exc:
                logger.error(
                    "pod_unload_deploy_failed",
                    previous_tenant=previous,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if isinstance(exc, DeployError):
                    raise
                raise DeployError(f"clearing the engine failed: {exc}") from exc

        logger.info(
            "pod_graph_unloaded",
            pod_name=self.pod.pod_name,
            previous_tenant=previous,
            flows_cleared=cleared,
        )

    async def save_editor_flows(self, flows: List[Dict[str, Any]]) -> int:
        """Deploy an editor save for the tenant that owns the pod right now.

        Runs under the same lock as load and unload, so a save can never land
        after an unload has cleared the pod.
        """

        async with self._lock:
            tenant_id = self.pod.current_tenant
            if tenant_id is None:
                raise BadRequestError("no tenant is loaded on this pod")
            node_count = await self.engine.deploy(flows, user=tenant_id)
            self.store.save_flows(flows)

        logger.info("pod_editor_saved", tenant_id=tenant_id, node_count=node_count)
        return node_count

    async def run_flow(self, flow_id: str) -> Dict[str, Any]:
        if self.pod.current_tenant is None:
            raise BadRequestError("no tenant is loaded on this pod")
        return await self.engine.run(flow_id)

    def health(self) -> HealthSnapshot:
        return HealthSnapshot(
            ready=self.engine.ready,
            current_tenant=self.pod.current_tenant,
            uptime=time.monotonic() - self.pod.started_at,
            pod_name=self.pod.pod_name,
        )

    def activity(self) -> ActivitySnapshot:
        return ActivitySnapshot(
            last_activity_at=self.activity_tracker.last_activity_ms,
            current_tenant=self.pod.current_tenant,
            running_flow_count=len(self.running),
            idle_ms=self.activity_tracker.idle_ms(),
            memory_mb=self._memory_probe(),
        )

    def record_interaction(self) -> None:
        """Mark editor traffic as activity. Management calls must not use this."""
        self.activity_tracker.touch()

    async def start(self) -> None:
        await self.engine.start()
        logger.info("pod_ready", pod_name=self.pod.pod_name)

    async def shutdown(self) -> None:
        async with self._lock:
            bridge, self._bridge = self._bridge, None
            if bridge is not None:
                await bridge.close()
        await self.engine.stop()
        logger.info("pod_shutdown", pod_name=self.pod.pod_name)


__all__ = [
    "ActivitySnapshot",
    "BridgeFactory",
    "HealthSnapshot",
    "Pod",
    "PodController",
    "process_memory_mb",
]
