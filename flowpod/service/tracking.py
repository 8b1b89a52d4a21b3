from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable, Mapping, Optional

from flowpod.logging import get_logger

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ActivityTracker:
    """Last-interaction timestamp of the pod, in epoch milliseconds."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._lock = threading.Lock()
        self._last_activity_ms = clock()

    @property
    def last_activity_ms(self) -> int:
        with self._lock:
            return self._last_activity_ms

    def touch(self) -> int:
        with self._lock:
            self._last_activity_ms = self._clock()
            return self._last_activity_ms

    def idle_ms(self) -> int:
        now = self._clock()
        with self._lock:
            return max(0, now - self._last_activity_ms)


def flow_id_from_event(info: Any) -> Optional[str]:
    """Pull the flow-instance id out of an engine lifecycle event payload."""

    if not isinstance(info, Mapping):
        return None
    config = info.get("config")
    if isinstance(config, Mapping) and config.get("id"):
        return str(config["id"])
    if info.get("id"):
        return str(info["id"])
    return None


class RunningFlowSet:
    """Identifiers of flow instances currently executing inside the engine.

    Members are only added on a "started" event. They leave on the matching
    "stopped" event, or all at once through ``clear`` on unload.
    """

    def __init__(self) -> None:
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, flow_id: object) -> bool:
        with self._lock:
            return flow_id in self._ids

    def ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ids)

    def on_started(self, info: Any = None) -> str:
        flow_id = flow_id_from_event(info) or f"flow-{uuid.uuid4().hex}"
        with self._lock:
            self._ids.add(flow_id)
        return flow_id

    def on_stopped(self, info: Any = None) -> Optional[str]:
        flow_id = flow_id_from_event(info)
        with self._lock:
            if flow_id is not None:
                if flow_id in self._ids:
                    self._ids.discard(flow_id)
                    return flow_id
                return None
            # No id to correlate with: drop an arbitrary member so the count
            # can still reach zero. May remove the wrong id.
            if self._ids:
                dropped = next(iter(self._ids))
                self._ids.discard(dropped)
                logger.debug("flow_stopped_without_id", dropped=dropped)
                return dropped
        return None

    def clear(self) -> int:
        with self._lock:
            count = len(self._ids)
            self._ids.clear()
            return count


__all__ = ["ActivityTracker", "RunningFlowSet", "flow_id_from_event"]
