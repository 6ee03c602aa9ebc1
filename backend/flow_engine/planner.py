"""
Build execution plans for graphs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Set, Union

from .schema import (
    CycleDetectedError,
    DanglingEdgeError,
    DuplicateNodeIdError,
    Graph,
    Node,
    UnknownNodeTypeError,
)

if TYPE_CHECKING:
    from .registry import NodeExecutorRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedConnection:
    source_id: str
    target_id: str
    source_port: str
    target_port: str
    index: int


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Waves of mutually independent nodes, in dependency order.

    Pure data: holds the node snapshots and wiring, never runtime outputs.
    """

    nodes_by_id: Mapping[str, Node]
    waves: List[List[str]]
    upstream: Mapping[str, List[PlannedConnection]]
    downstream: Mapping[str, List[PlannedConnection]]

    @property
    def ordered_nodes(self) -> List[str]:
        return [node_id for wave in self.waves for node_id in wave]

    def dependencies(self, node_id: str) -> Set[str]:
        return {conn.source_id for conn in self.upstream.get(node_id, [])}

    def dependents(self, node_id: str) -> Set[str]:
        return {conn.target_id for conn in self.downstream.get(node_id, [])}

    def transitive_dependents(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        queue = [node_id]
        while queue:
            current = queue.pop()
            for target_id in self.dependents(current):
                if target_id not in seen:
                    seen.add(target_id)
                    queue.append(target_id)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waves": [list(wave) for wave in self.waves],
            "order": self.ordered_nodes,
            "nodes": [self.nodes_by_id[node_id].to_dict() for node_id in self.ordered_nodes],
            "edges": [
                {
                    "source": conn.source_id,
                    "sourceHandle": conn.source_port,
                    "target": conn.target_id,
                    "targetHandle": conn.target_port,
                }
                for conn in sorted(
                    (c for conns in self.upstream.values() for c in conns),
                    key=lambda c: c.index,
                )
            ],
        }


class PlanBuilder:
    """
    Turns a graph into an acyclic, wave-ordered execution plan.

    When a registry is supplied every node type is checked against it, so a
    plan that builds can always be dispatched.
    """

    def __init__(self, registry: Optional["NodeExecutorRegistry"] = None):
        self.registry = registry

    def build(self, graph: Graph) -> ExecutionPlan:
        nodes_by_id: Dict[str, Node] = {}
        for node in graph.nodes:
            if node.id in nodes_by_id:
                raise DuplicateNodeIdError(node.id)
            nodes_by_id[node.id] = node

        connections: List[PlannedConnection] = []
        for index, edge in enumerate(graph.edges):
            for endpoint in (edge.source, edge.target):
                if endpoint not in nodes_by_id:
                    raise DanglingEdgeError(edge, endpoint)
            connections.append(
                PlannedConnection(
                    source_id=edge.source,
                    target_id=edge.target,
                    source_port=edge.source_handle,
                    target_port=edge.target_handle,
                    index=index,
                )
            )

        if self.registry is not None:
            for node in graph.nodes:
                if node.type not in self.registry:
                    raise UnknownNodeTypeError(node.type, node.id)

        upstream: Dict[str, List[PlannedConnection]] = {node_id: [] for node_id in nodes_by_id}
        downstream: Dict[str, List[PlannedConnection]] = {node_id: [] for node_id in nodes_by_id}
        for conn in connections:
            downstream[conn.source_id].append(conn)
            upstream[conn.target_id].append(conn)

        waves = self._waves(list(nodes_by_id), upstream, downstream)
        logger.debug(
            "Planned %d nodes in %d waves: %s",
            len(nodes_by_id), len(waves), waves
        )
        return ExecutionPlan(
            nodes_by_id=nodes_by_id,
            waves=waves,
            upstream=upstream,
            downstream=downstream,
        )

    @staticmethod
    def _waves(
        order: List[str],
        upstream: Dict[str, List[PlannedConnection]],
        downstream: Dict[str, List[PlannedConnection]],
    ) -> List[List[str]]:
        indegree = {node_id: len(upstream[node_id]) for node_id in order}
        remaining = list(order)
        waves: List[List[str]] = []

        while remaining:
            wave = [node_id for node_id in remaining if indegree[node_id] == 0]
            if not wave:
                raise CycleDetectedError(remaining, PlanBuilder._find_cycle(remaining, downstream))
            waves.append(wave)
            in_wave = set(wave)
            remaining = [node_id for node_id in remaining if node_id not in in_wave]
            for node_id in wave:
                for conn in downstream[node_id]:
                    indegree[conn.target_id] -= 1

        return waves

    @staticmethod
    def _find_cycle(
        remaining: List[str],
        downstream: Dict[str, List[PlannedConnection]],
    ) -> List[str]:
        """Walk successors inside the leftover set until a node repeats."""
        leftover = set(remaining)
        start = remaining[0]
        path: List[str] = []
        position: Dict[str, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            successors = [c.target_id for c in downstream[current] if c.target_id in leftover]
            if not successors:
                # Dead end downstream of a cycle; restart from a node on one.
                leftover.discard(current)
                path, position = [], {}
                current = next(node_id for node_id in remaining if node_id in leftover)
                continue
            current = successors[0]
        return path[position[current]:]


def build_plan(
    graph: Union[Graph, Mapping[str, Any]],
    registry: Optional["NodeExecutorRegistry"] = None,
) -> ExecutionPlan:
    """Parse (if needed) and plan ``graph`` in one call."""
    if not isinstance(graph, Graph):
        graph = Graph.from_dict(graph)
    return PlanBuilder(registry).build(graph)
