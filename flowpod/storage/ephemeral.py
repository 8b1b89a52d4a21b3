from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Any, Dict, List

from flowpod.logging import get_logger
from flowpod.storage.models import EMPTY_STATE, EphemeralState


class EphemeralStore:
    """Memory-resident storage for whichever tenant currently owns the pod.

    Nothing is written to disk. ``replace`` and ``clear`` swap the whole
    state; the ``get_*`` readers and ``save_flows`` are the storage interface the
    embedded engine uses while a tenant is loaded.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._state: EphemeralState = EMPTY_STATE
        self._lock = threading.Lock()

    def snapshot(self) -> EphemeralState:
        with self._lock:
            return self._state

    def replace(self, state: EphemeralState) -> EphemeralState:
        with self._lock:
            previous = self._state
            self._state = state
        self.logger.debug(
            "ephemeral_state_replaced",
            previous_nodes=previous.node_count,
            nodes=state.node_count,
        )
        return previous

    def clear(self) -> None:
        with self._lock:
            self._state = EMPTY_STATE

    def get_flows(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.snapshot().graph)

    def save_flows(self, flows: Any) -> None:
        # The engine hands over either a bare node list or {"flows": [...]}
        if isinstance(flows, dict):
            flows = flows.get("flows")
        if not isinstance(flows, list):
            return
        self._swap_field(graph=copy.deepcopy(flows))

    def get_credentials(self) -> Dict[str, Any]:
        return copy.deepcopy(self.snapshot().credentials)

    def get_settings(self) -> Dict[str, Any]:
        return copy.deepcopy(self.snapshot().settings)

    def _swap_field(self, **changes: Any) -> None:
        with self._lock:
            self._state = replace(self._state, **changes)


__all__ = ["EphemeralStore"]
