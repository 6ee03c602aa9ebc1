"""
Per-node execution context passed to node executors.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .resolver import first_present
from .schema import Node


NodeResultCallback = Callable[[str, Any], Union[None, Awaitable[None]]]


@dataclass
class NodeExecutionContext:
    """
    Everything an executor gets to see for one invocation.

    ``config`` is the typed view produced by the executor's ``parse_config``;
    ``node.config`` keeps the raw mapping (runtime inputs already applied).
    """

    node: Node
    config: Any
    inputs: Dict[str, Any]
    run_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    publish: Optional[NodeResultCallback] = None

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def get_input(self, *keys: str, default: Any = "") -> Any:
        """Return the first resolved input among ``keys``."""
        return first_present(self.inputs, keys, default)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise asyncio.CancelledError(f"Run {self.run_id} cancelled")

    async def update_output(self, value: Any) -> None:
        """Publish an intermediate result (e.g. streamed text) for this node."""
        if self.publish is None:
            return
        outcome = self.publish(self.node.id, value)
        if inspect.isawaitable(outcome):
            await outcome
