"""
Input resolution: turn upstream results into a node's input map.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from .constants import PORT_ALIASES
from .data_store import NodeOutputStore
from .planner import ExecutionPlan

logger = logging.getLogger(__name__)


def first_present(inputs: Mapping[str, Any], keys: Iterable[str], default: Any = "") -> Any:
    for key in keys:
        if key in inputs and inputs[key] is not None:
            return inputs[key]
    return default


class InputResolver:
    """
    Resolves inputs for a node from the results of its upstream nodes.

    Edges are visited in graph order and written into a plain map, so when
    several edges target the same port the last one wins. Aggregating them
    into a list is left to executors that want it.
    """

    def __init__(self, plan: ExecutionPlan, store: NodeOutputStore):
        self.plan = plan
        self.store = store

    def resolve(
        self,
        node_id: str,
        input_ports: Iterable[str] = (),
        input_defaults: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for conn in self.plan.upstream.get(node_id, []):
            if not self.store.has_result(conn.source_id):
                continue
            if conn.target_port in inputs:
                logger.debug(
                    "Node %s port %s: edge from %s overwrites an earlier value",
                    node_id, conn.target_port, conn.source_id
                )
            inputs[conn.target_port] = self.store.get_output(conn.source_id, conn.source_port, default="")

        defaults = input_defaults or {}
        for port in input_ports:
            if port in inputs:
                continue
            chain = PORT_ALIASES.get(port, (port,))
            inputs[port] = first_present(inputs, chain, defaults.get(port, ""))
        return inputs
