"""
Run state tracking for flow executions.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_NODE_TRANSITIONS = {
    NodeStatus.PENDING: {NodeStatus.RUNNING, NodeStatus.SKIPPED},
    NodeStatus.RUNNING: {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED},
    NodeStatus.SUCCEEDED: set(),
    NodeStatus.FAILED: set(),
    NodeStatus.SKIPPED: set(),
}


class NodeExecutionError(Exception):
    """An executor raised, timed out, or its backend failed."""

    def __init__(self, node_id: str, node_type: str, message: str):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(f"Node {node_id} ({node_type}) failed: {message}")


class NodeTimeoutError(NodeExecutionError):
    pass


class FlowRunError(RuntimeError):
    """Raised by ``RunOutcome.raise_for_status`` for a failed run."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


@dataclass
class NodeRunState:
    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: Optional[BaseException] = None
    skip_reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "output": to_jsonable(self.output) if self.status == NodeStatus.SUCCEEDED else None,
            "error": str(self.error) if self.error else None,
            "skip_reason": self.skip_reason,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class NodeFailure:
    node_id: str
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "error": self.message,
            "error_type": type(self.error).__name__,
        }


class RunState:
    """
    Mutable per-run bookkeeping, owned by a single FlowExecutor run.

    Transitions are checked so a node can never, for instance, leave
    ``Failed`` or run twice.
    """

    def __init__(self, run_id: str, node_types: Dict[str, str]):
        self.run_id = run_id
        self.status = RunStatus.INITIALIZED
        self.nodes: Dict[str, NodeRunState] = {
            node_id: NodeRunState(node_id=node_id, node_type=node_type)
            for node_id, node_type in node_types.items()
        }
        self.failures: List[NodeFailure] = []
        self.publish_errors: List[NodeFailure] = []
        self.started_at = time.time()
        self.finished_at: Optional[float] = None

    def status_of(self, node_id: str) -> NodeStatus:
        return self.nodes[node_id].status

    def _transition(self, node_id: str, status: NodeStatus) -> NodeRunState:
        entry = self.nodes[node_id]
        if status not in _NODE_TRANSITIONS[entry.status]:
            raise RuntimeError(
                f"Illegal transition for node {node_id}: {entry.status.value} -> {status.value}"
            )
        entry.status = status
        return entry

    def mark_running(self, node_id: str) -> None:
        entry = self._transition(node_id, NodeStatus.RUNNING)
        entry.started_at = time.time()

    def mark_succeeded(self, node_id: str, output: Any) -> None:
        entry = self._transition(node_id, NodeStatus.SUCCEEDED)
        entry.output = output
        entry.finished_at = time.time()

    def mark_failed(self, node_id: str, error: BaseException) -> None:
        entry = self._transition(node_id, NodeStatus.FAILED)
        entry.error = error
        entry.finished_at = time.time()
        self.failures.append(NodeFailure(node_id, error))

    def mark_skipped(self, node_id: str, reason: str) -> None:
        entry = self._transition(node_id, NodeStatus.SKIPPED)
        entry.skip_reason = reason
        if entry.started_at is not None:
            entry.finished_at = time.time()

    def unfinished(self) -> List[str]:
        return [
            node_id for node_id, entry in self.nodes.items()
            if entry.status in (NodeStatus.PENDING, NodeStatus.RUNNING)
        ]

    def finish(self, cancelled: bool) -> None:
        if cancelled:
            self.status = RunStatus.CANCELLED
        elif all(entry.status == NodeStatus.SUCCEEDED for entry in self.nodes.values()):
            self.status = RunStatus.COMPLETED
        else:
            self.status = RunStatus.FAILED
        self.finished_at = time.time()


@dataclass
class RunOutcome:
    """What a caller gets back from a run: per-node states plus the verdict."""

    run_id: str
    status: RunStatus
    nodes: Dict[str, NodeRunState]
    order: List[str]
    primary_failure: Optional[NodeFailure] = None
    suppressed_failures: List[NodeFailure] = field(default_factory=list)
    publish_errors: List[NodeFailure] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    @classmethod
    def from_state(cls, state: RunState, order: List[str]) -> "RunOutcome":
        failures = list(state.failures)
        return cls(
            run_id=state.run_id,
            status=state.status,
            nodes=dict(state.nodes),
            order=list(order),
            primary_failure=failures[0] if failures else None,
            suppressed_failures=failures[1:],
            publish_errors=list(state.publish_errors),
            started_at=state.started_at,
            finished_at=state.finished_at or time.time(),
        )

    def __getitem__(self, node_id: str) -> NodeRunState:
        return self.nodes[node_id]

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def results(self) -> Dict[str, Any]:
        return {
            node_id: entry.output
            for node_id, entry in self.nodes.items()
            if entry.status == NodeStatus.SUCCEEDED
        }

    @property
    def failed_nodes(self) -> List[str]:
        return [n for n in self.order if self.nodes[n].status == NodeStatus.FAILED]

    @property
    def skipped_nodes(self) -> List[str]:
        return [n for n in self.order if self.nodes[n].status == NodeStatus.SKIPPED]

    def raise_for_status(self) -> None:
        if self.status == RunStatus.FAILED and self.primary_failure:
            raise FlowRunError(
                f"Run {self.run_id} failed at node {self.primary_failure.node_id}: "
                f"{self.primary_failure.message}",
                node_id=self.primary_failure.node_id,
            ) from self.primary_failure.error
        if self.status == RunStatus.FAILED:
            raise FlowRunError(f"Run {self.run_id} failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "order": self.order,
            "nodes": {node_id: self.nodes[node_id].to_dict() for node_id in self.order},
            "error": self.primary_failure.to_dict() if self.primary_failure else None,
            "suppressed_errors": [f.to_dict() for f in self.suppressed_failures],
            "publish_errors": [f.to_dict() for f in self.publish_errors],
            "elapsed": round(self.finished_at - self.started_at, 3),
        }


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of a node result into JSON-safe data."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)
