"""
Flow execution package
======================

Provides the core building blocks for running node graphs:

- Graph definitions and structural validation errors
- Wave-based execution planning
- Node executor registry and the built-in executors
- The flow executor that drives a plan and reports a RunOutcome
"""

from .schema import (  # noqa: F401
    CycleDetectedError,
    DanglingEdgeError,
    DuplicateNodeIdError,
    Edge,
    Graph,
    GraphValidationError,
    Node,
    UnknownNodeTypeError,
)
from .planner import ExecutionPlan, PlanBuilder, build_plan  # noqa: F401
from .registry import BaseNodeExecutor, DuplicateExecutorError, NodeExecutorRegistry  # noqa: F401
from .context import NodeExecutionContext  # noqa: F401
from .data_store import PortOutputs  # noqa: F401
from .state import (  # noqa: F401
    FlowRunError,
    NodeExecutionError,
    NodeStatus,
    NodeTimeoutError,
    RunOutcome,
    RunStatus,
)
from .executor import FlowExecutor, run_flow  # noqa: F401
