from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class EphemeralState:
    """Graph, credentials and settings of the tenant that owns the pod.

    Instances are never mutated; the store swaps whole instances.
    """

    graph: List[Dict[str, Any]] = field(default_factory=list)
    credentials: Dict[str, Any] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        graph: List[Dict[str, Any]] | None = None,
        credentials: Dict[str, Any] | None = None,
        settings: Dict[str, Any] | None = None,
    ) -> "EphemeralState":
        # Deep copies so callers cannot reach into a stored state
        return cls(
            graph=copy.deepcopy(list(graph or [])),
            credentials=copy.deepcopy(dict(credentials or {})),
            settings=copy.deepcopy(dict(settings or {})),
        )

    @property
    def node_count(self) -> int:
        return len(self.graph)

    @property
    def is_empty(self) -> bool:
        return not (self.graph or self.credentials or self.settings)


EMPTY_STATE = EphemeralState()
