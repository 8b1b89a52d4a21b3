from __future__ import annotations

import threading
from functools import partial

from flowpod.config import get_settings, reset_settings_cache
from flowpod.logging import get_logger
from flowpod.service.bridge import GatewayBridge
from flowpod.service.egress import EgressGuard, SystemResolver
from flowpod.service.engine import create_engine
from flowpod.service.outbound import OutboundHttpClient
from flowpod.service.pod import Pod, PodController
from flowpod.storage.ephemeral import EphemeralStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            pod_name=self.settings.pod_name,
            flow_engine=self.settings.flow_engine.value,
            test_mode=self.settings.test_mode,
        )

        self.store = EphemeralStore()
        self.engine = create_engine(
            self.settings.flow_engine, self.store, outbound_factory=self.outbound_client
        )
        self.resolver = SystemResolver(max_workers=self.settings.egress_dns_max_workers)
        self.guard = EgressGuard(
            resolver=self.resolver,
            dns_timeout=self.settings.egress_dns_timeout_seconds,
            blocked_suffixes=tuple(self.settings.egress_blocked_suffixes),
        )
        self.pod = Pod(pod_name=self.settings.pod_name)
        self.controller = PodController(
            self.pod,
            engine=self.engine,
            store=self.store,
            pod_secret=self.settings.pod_secret,
            bridge_factory=partial(
                GatewayBridge, timeout=self.settings.gateway_timeout_seconds
            ),
        )

        logger.info(
            "runtime_init_complete",
            pod_name=self.settings.pod_name,
            secret_configured=self.settings.pod_secret is not None,
            blocked_suffixes=list(self.guard.blocked_suffixes),
        )

    def outbound_client(self) -> OutboundHttpClient:
        """New outbound client for a flow node, bound to this pod's egress guard."""

        return OutboundHttpClient(
            self.guard,
            timeout=self.settings.outbound_timeout_seconds,
            max_redirects=self.settings.outbound_max_redirects,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
