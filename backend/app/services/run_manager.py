"""
Run Manager Service
Tracks flow runs started through the HTTP API: planning, background
execution, status lookup and cancellation. State lives in memory only.
"""
import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from flow_control import FlowControlHub
from flow_engine import ExecutionPlan, FlowExecutor, GraphValidationError, NodeExecutorRegistry, build_plan
from flow_engine.state import RunOutcome
from utils.logging_utils import compact_json

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    run_id: str
    executor: FlowExecutor
    status: str = 'pending'
    created_at: float = field(default_factory=time.time)
    outcome: Optional[RunOutcome] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'run_id': self.run_id,
            'status': self.status,
            'created_at': self.created_at,
            'error': self.error,
        }
        if self.outcome is not None:
            payload['outcome'] = self.outcome.to_dict()
        return payload


class RunManager:
    """
    Owns the registry/hub pair and one FlowExecutor per run.

    Structural problems surface from ``plan``/``start_run`` as
    GraphValidationError (a ValueError) before any thread is started.
    """

    def __init__(
        self,
        registry: NodeExecutorRegistry,
        hub: FlowControlHub,
        node_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        cancel_grace_period: float = 5.0,
        history_limit: int = 50,
    ):
        self.registry = registry
        self.hub = hub
        self.node_timeout = node_timeout
        self.max_concurrency = max_concurrency
        self.cancel_grace_period = cancel_grace_period
        self.history_limit = max(1, history_limit)
        self._runs: "OrderedDict[str, RunRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def plan(self, graph: Mapping[str, Any]) -> ExecutionPlan:
        return build_plan(graph, self.registry)

    def _prepare(self, graph: Mapping[str, Any], inputs: Mapping[str, Any]) -> ExecutionPlan:
        plan = self.plan(graph)
        unknown = [node_id for node_id in inputs if node_id not in plan.nodes_by_id]
        if unknown:
            raise GraphValidationError(f"Runtime input references unknown node: {unknown[0]}")
        return plan

    def _new_record(self) -> RunRecord:
        executor = FlowExecutor(
            self.registry,
            node_timeout=self.node_timeout,
            max_concurrency=self.max_concurrency,
            cancel_grace_period=self.cancel_grace_period,
        )
        record = RunRecord(run_id=uuid.uuid4().hex, executor=executor)
        with self._lock:
            self._runs[record.run_id] = record
            while len(self._runs) > self.history_limit:
                oldest_id, oldest = next(iter(self._runs.items()))
                if oldest.status in ('pending', 'running'):
                    break
                self._runs.pop(oldest_id)
                self.hub.forget_run(oldest_id)
        return record

    def start_run(self, graph: Mapping[str, Any], inputs: Optional[Mapping[str, Any]] = None) -> str:
        """Plan synchronously, then execute on a background thread."""
        inputs = dict(inputs or {})
        plan = self._prepare(graph, inputs)
        record = self._new_record()

        thread = threading.Thread(
            target=self._execute,
            args=(record, plan, inputs),
            name=f"flow-run-{record.run_id[:8]}",
            daemon=True,
        )
        thread.start()
        logger.info("Started run %s in background (inputs: %s)", record.run_id, compact_json(sorted(inputs)))
        return record.run_id

    def run_inline(self, graph: Mapping[str, Any], inputs: Optional[Mapping[str, Any]] = None) -> RunRecord:
        """Plan and execute on the calling thread, returning the finished record."""
        inputs = dict(inputs or {})
        plan = self._prepare(graph, inputs)
        record = self._new_record()
        self._execute(record, plan, inputs)
        return record

    def _execute(self, record: RunRecord, plan: ExecutionPlan, inputs: Dict[str, Any]) -> None:
        record.status = 'running'
        try:
            outcome = asyncio.run(
                record.executor.run(
                    plan,
                    inputs,
                    on_node_result=self.hub.publisher(record.run_id),
                    run_id=record.run_id,
                )
            )
            record.outcome = outcome
            record.status = outcome.status.value
            if outcome.primary_failure:
                record.error = outcome.primary_failure.message
        except Exception as e:
            logger.exception("Run %s crashed: %s", record.run_id, e)
            record.status = 'failed'
            record.error = str(e)
        finally:
            self.hub.close_run(record.run_id, record.to_dict())

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def cancel_run(self, run_id: str) -> bool:
        record = self.get_run(run_id)
        if record is None:
            return False
        record.executor.cancel()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def list_runs(self) -> list:
        with self._lock:
            return [record.to_dict() for record in reversed(self._runs.values())]
