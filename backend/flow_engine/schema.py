"""
Graph definitions and structural error types.

The editor hands us a document shaped like::

    {
        "nodes": [{"id": "a", "type": "textInputNode", "data": {"config": {...}}}],
        "edges": [{"source": "a", "sourceHandle": "text-out",
                   "target": "b", "targetHandle": "text-in"}]
    }

Parsing only checks shape. Relationships between nodes and edges (dangling
references, duplicate ids, cycles) are the planner's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .constants import DEFAULT_PORT


class GraphValidationError(ValueError):
    """Raised when a graph definition fails structural validation."""


class DuplicateNodeIdError(GraphValidationError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id: {node_id}")


class DanglingEdgeError(GraphValidationError):
    def __init__(self, edge: "Edge", missing_node_id: str):
        self.edge = edge
        self.missing_node_id = missing_node_id
        super().__init__(
            f"Edge {edge.source}:{edge.source_handle} -> {edge.target}:{edge.target_handle} "
            f"references unknown node: {missing_node_id}"
        )


class CycleDetectedError(GraphValidationError):
    """
    Raised when no further wave can be formed.

    ``node_ids`` holds every node left unplanned (the witness set), ``cycle``
    one concrete loop among them.
    """

    def __init__(self, node_ids: Sequence[str], cycle: Sequence[str]):
        self.node_ids = list(node_ids)
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Graph contains a cycle: {path}")


class UnknownNodeTypeError(GraphValidationError):
    def __init__(self, node_type: str, node_id: Optional[str] = None):
        self.node_type = node_type
        self.node_id = node_id
        where = f" (node {node_id})" if node_id else ""
        super().__init__(f"No executor registered for node type: {node_type}{where}")


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    config: Mapping[str, Any] = field(default_factory=dict)
    label: str = ""

    def __post_init__(self):
        object.__setattr__(self, "config", _freeze(self.config))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Node":
        if not isinstance(raw, Mapping):
            raise GraphValidationError(f"Node entry must be an object, got {type(raw).__name__}")
        node_id = raw.get("id")
        node_type = raw.get("type")
        if not node_id or not isinstance(node_id, str):
            raise GraphValidationError(f"Node is missing an id: {raw}")
        if not node_type or not isinstance(node_type, str):
            raise GraphValidationError(f"Node {node_id} is missing a type")

        data = raw.get("data") or {}
        if not isinstance(data, Mapping):
            raise GraphValidationError(f"Node {node_id} data must be an object")

        config = data.get("config")
        if isinstance(config, Mapping):
            config = dict(config)
        else:
            # Older documents keep settings directly on data
            config = {k: v for k, v in data.items() if k not in ("label", "config", "tool")}
        if isinstance(raw.get("config"), Mapping):
            config.update(raw["config"])

        return cls(id=node_id, type=node_type, config=config, label=str(data.get("label") or ""))

    def with_config(self, overlay: Mapping[str, Any]) -> "Node":
        """Return a snapshot of this node with ``overlay`` merged into its config."""
        merged = dict(self.config)
        merged.update(overlay)
        return replace(self, config=merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": {"label": self.label, "config": dict(self.config)},
        }


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    source_handle: str = DEFAULT_PORT
    target_handle: str = DEFAULT_PORT
    id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "source_handle", self.source_handle or DEFAULT_PORT)
        object.__setattr__(self, "target_handle", self.target_handle or DEFAULT_PORT)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Edge":
        if not isinstance(raw, Mapping):
            raise GraphValidationError(f"Edge entry must be an object, got {type(raw).__name__}")
        source = raw.get("source")
        target = raw.get("target")
        if not source or not target:
            raise GraphValidationError(f"Edge is missing source or target: {raw}")
        return cls(
            source=str(source),
            target=str(target),
            source_handle=raw.get("sourceHandle") or DEFAULT_PORT,
            target_handle=raw.get("targetHandle") or DEFAULT_PORT,
            id=raw.get("id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "source": self.source,
            "sourceHandle": self.source_handle,
            "target": self.target,
            "targetHandle": self.target_handle,
        }
        if self.id:
            payload["id"] = self.id
        return payload


@dataclass(frozen=True)
class Graph:
    nodes: Sequence[Node]
    edges: Sequence[Edge] = ()

    def __post_init__(self):
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "Graph":
        if not isinstance(document, Mapping):
            raise GraphValidationError("Graph document must be an object")
        raw_nodes = document.get("nodes") or []
        raw_edges = document.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise GraphValidationError("Graph nodes and edges must be lists")
        return cls(
            nodes=[Node.from_dict(n) for n in raw_nodes],
            edges=[Edge.from_dict(e) for e in raw_edges],
        )

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }
