"""
Simple in-memory store for node outputs during a run.
"""

from typing import Any, Dict

from .constants import DEFAULT_PORT


class PortOutputs(dict):
    """
    Result wrapper for nodes exposing more than one output port.

    Returning ``PortOutputs(text=..., image=...)`` from an executor stores
    each value under its own port. The first entry doubles as the default.
    """


_MISSING = object()


class NodeOutputStore:
    """
    Stores node results keyed by (node_id, port).

    Only the flow executor writes here, and only for nodes that succeeded.
    """

    def __init__(self):
        self._storage: Dict[str, Dict[str, Any]] = {}

    def set_result(self, node_id: str, result: Any) -> None:
        if isinstance(result, PortOutputs):
            ports = dict(result)
            if ports and DEFAULT_PORT not in ports:
                ports[DEFAULT_PORT] = next(iter(result.values()))
        else:
            ports = {DEFAULT_PORT: result}
        self._storage[node_id] = ports

    def has_result(self, node_id: str) -> bool:
        return node_id in self._storage

    def get_output(self, node_id: str, port: str = DEFAULT_PORT, default: Any = _MISSING) -> Any:
        """
        Return the value a node produced on ``port``.

        Single-output nodes answer to any handle name, so an unknown port
        falls back to the node's default output.
        """
        ports = self._storage.get(node_id)
        if ports is None:
            if default is _MISSING:
                raise KeyError(node_id)
            return default
        if port in ports:
            return ports[port]
        if DEFAULT_PORT in ports:
            return ports[DEFAULT_PORT]
        if default is _MISSING:
            raise KeyError(f"{node_id}:{port}")
        return default
