"""
Node executor contract and the registry that maps node types to executors.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .constants import DEFAULT_RUNTIME_INPUT_KEY
from .schema import UnknownNodeTypeError

if TYPE_CHECKING:
    from .context import NodeExecutionContext

logger = logging.getLogger(__name__)


class DuplicateExecutorError(ValueError):
    """Raised when a node type is registered twice."""


class BaseNodeExecutor:
    """
    Base class for node executors.

    Only ``execute`` is required by the registry. The class attributes below
    are optional hints the flow executor reads with sensible fallbacks, so a
    plain object exposing ``execute(context)`` registers just as well.
    """

    node_type: str = ""
    # Typed view of the node config; None hands executors the raw mapping.
    config_class: Optional[type] = None
    # Ports filled from their alias chains before ``execute`` runs.
    input_ports: Tuple[str, ...] = ()
    input_defaults: Mapping[str, Any] = {}
    runtime_input_key: str = DEFAULT_RUNTIME_INPUT_KEY

    def parse_config(self, raw: Mapping[str, Any]) -> Any:
        if self.config_class is None:
            return dict(raw)
        return self.config_class.from_dict(raw)

    async def execute(self, ctx: "NodeExecutionContext") -> Any:
        raise NotImplementedError


class NodeExecutorRegistry:
    """
    Table of node type -> executor.

    Built once during startup and only read afterwards, so lookups need no
    locking. Registering a type twice is rejected instead of shadowing.
    """

    def __init__(self, executors: Optional[Mapping[str, Any]] = None):
        self._executors: Dict[str, Any] = {}
        for node_type, executor in (executors or {}).items():
            self.register(node_type, executor)

    def register(self, node_type: str, executor: Any) -> Any:
        if not node_type or not isinstance(node_type, str):
            raise ValueError("Node type must be a non-empty string")
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Executor for {node_type} has no callable execute()")
        if node_type in self._executors:
            raise DuplicateExecutorError(f"Executor already registered for node type: {node_type}")
        self._executors[node_type] = executor
        logger.debug("Registered executor %s for node type %s", type(executor).__name__, node_type)
        return executor

    def register_all(self, executors: Iterable[BaseNodeExecutor]) -> None:
        for executor in executors:
            self.register(executor.node_type, executor)

    def lookup(self, node_type: str) -> Any:
        try:
            return self._executors[node_type]
        except KeyError:
            raise UnknownNodeTypeError(node_type) from None

    def node_types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def __iter__(self) -> Iterator[str]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)
