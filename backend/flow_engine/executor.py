"""
Flow executor - runs an execution plan against a node executor registry.

Scheduling is driven purely by dependencies: a node starts as soon as every
node feeding it has succeeded, without waiting for the rest of its wave.

Per-node lifecycle::

    pending -> running -> succeeded | failed
    pending -> skipped          (an upstream node failed, or the run stopped)
    running -> skipped          (cancelled while in flight)

A failure prunes only the failing node's transitive dependents; independent
branches keep running unless ``fail_fast`` is set.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from utils.async_helpers import run_in_thread
from utils.logging_utils import summarize

from .constants import DEFAULT_RUNTIME_INPUT_KEY
from .context import NodeExecutionContext, NodeResultCallback
from .data_store import NodeOutputStore
from .planner import ExecutionPlan, build_plan
from .registry import NodeExecutorRegistry
from .resolver import InputResolver
from .schema import Graph, GraphValidationError, Node, UnknownNodeTypeError
from .state import (
    NodeExecutionError,
    NodeFailure,
    NodeStatus,
    NodeTimeoutError,
    RunOutcome,
    RunState,
    RunStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_GRACE_PERIOD = 5.0


class FlowExecutor:
    """
    Executes one run of a plan.

    An instance owns the run state of exactly one run; create a new executor
    for every run. ``cancel()`` may be called from any thread.
    """

    def __init__(
        self,
        registry: NodeExecutorRegistry,
        *,
        node_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        fail_fast: bool = False,
        cancel_grace_period: float = DEFAULT_CANCEL_GRACE_PERIOD,
    ):
        self.registry = registry
        self.node_timeout = node_timeout or None
        self.max_concurrency = max_concurrency or None
        self.fail_fast = fail_fast
        self.cancel_grace_period = max(0.0, cancel_grace_period)

        self.run_id: Optional[str] = None
        self._started = False
        self._cancel_requested = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Signal cancellation of the current run."""
        self._cancel_requested = True
        loop, event = self._loop, self._cancel_event
        if loop is None or event is None or loop.is_closed():
            return
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    async def run(
        self,
        plan: ExecutionPlan,
        runtime_inputs: Optional[Mapping[str, Any]] = None,
        on_node_result: Optional[NodeResultCallback] = None,
        run_id: Optional[str] = None,
    ) -> RunOutcome:
        if self._started:
            raise RuntimeError("FlowExecutor runs a single flow; create a new instance per run")
        self._started = True
        self.run_id = run_id or uuid.uuid4().hex

        # Pre-flight: nothing below may start if the plan cannot be dispatched.
        executors = self._resolve_executors(plan)
        nodes = self._apply_runtime_inputs(plan, executors, runtime_inputs or {})

        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()

        run = _Run(self, plan, executors, nodes, on_node_result)
        return await run.execute()

    # ------------------------------------------------------------------
    # Pre-flight helpers
    # ------------------------------------------------------------------

    def _resolve_executors(self, plan: ExecutionPlan) -> Dict[str, Any]:
        executors = {}
        for node_id in plan.ordered_nodes:
            node = plan.nodes_by_id[node_id]
            try:
                executors[node_id] = self.registry.lookup(node.type)
            except UnknownNodeTypeError:
                raise UnknownNodeTypeError(node.type, node.id) from None
        return executors

    @staticmethod
    def _apply_runtime_inputs(
        plan: ExecutionPlan,
        executors: Mapping[str, Any],
        runtime_inputs: Mapping[str, Any],
    ) -> Dict[str, Node]:
        nodes = dict(plan.nodes_by_id)
        for node_id, value in runtime_inputs.items():
            if node_id not in nodes:
                raise GraphValidationError(f"Runtime input references unknown node: {node_id}")
            key = getattr(executors[node_id], "runtime_input_key", None) or DEFAULT_RUNTIME_INPUT_KEY
            nodes[node_id] = nodes[node_id].with_config({key: value})
        return nodes


class _Run:
    """Scheduling loop and bookkeeping for a single FlowExecutor.run call."""

    def __init__(
        self,
        owner: FlowExecutor,
        plan: ExecutionPlan,
        executors: Dict[str, Any],
        nodes: Dict[str, Node],
        on_node_result: Optional[NodeResultCallback],
    ):
        self.owner = owner
        self.plan = plan
        self.executors = executors
        self.nodes = nodes
        self.on_node_result = on_node_result
        self.cancel_event: asyncio.Event = owner._cancel_event

        self.order = plan.ordered_nodes
        self.position = {node_id: i for i, node_id in enumerate(self.order)}
        self.state = RunState(owner.run_id, {n: nodes[n].type for n in self.order})
        self.store = NodeOutputStore()
        self.resolver = InputResolver(plan, self.store)

        self.waiting: Dict[str, Set[str]] = {n: plan.dependencies(n) for n in self.order}
        self.ready: List[str] = [n for n in self.order if not self.waiting[n]]
        self.running: Dict[asyncio.Task, str] = {}
        self.publications: Dict[asyncio.Task, str] = {}
        self.halted_by: Optional[str] = None
        self.cancelled_nodes = 0

    async def execute(self) -> RunOutcome:
        state = self.state
        state.status = RunStatus.RUNNING
        logger.info(
            "Run %s started: %d nodes in %d waves",
            state.run_id, len(self.order), len(self.plan.waves)
        )

        cancel_wait = asyncio.ensure_future(self.cancel_event.wait())
        try:
            while not self.cancel_event.is_set() and self.halted_by is None:
                self._start_ready_nodes()
                if not self.running:
                    break
                done, _ = await asyncio.wait(
                    set(self.running) | {cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                finished = [task for task in done if task is not cancel_wait]
                for task in sorted(finished, key=lambda t: self.position[self.running[t]]):
                    self._settle(self.running.pop(task), task)

            if self.running:
                await self._wind_down()
        finally:
            cancel_wait.cancel()
            for task in self.running:
                task.cancel()

        self._skip_unfinished()
        await self._drain_publications()

        state.finish(cancelled=self.cancelled_nodes > 0)
        outcome = RunOutcome.from_state(state, self.order)
        if outcome.primary_failure:
            logger.info(
                "Run %s %s in %.2fs (first failure at node %s: %s)",
                state.run_id, outcome.status.value, outcome.finished_at - outcome.started_at,
                outcome.primary_failure.node_id, outcome.primary_failure.message
            )
        else:
            logger.info(
                "Run %s %s in %.2fs",
                state.run_id, outcome.status.value, outcome.finished_at - outcome.started_at
            )
        return outcome

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _has_capacity(self) -> bool:
        limit = self.owner.max_concurrency
        return limit is None or len(self.running) < limit

    def _start_ready_nodes(self) -> None:
        while self.ready and self._has_capacity():
            node_id = self.ready.pop(0)
            node = self.nodes[node_id]
            ctx = NodeExecutionContext(
                node=node,
                config=None,
                inputs={},
                run_id=self.state.run_id,
                cancel_event=self.cancel_event,
                publish=self._publish_partial if self.on_node_result else None,
            )
            self.state.mark_running(node_id)
            task = asyncio.create_task(self._invoke(self.executors[node_id], ctx), name=f"node:{node_id}")
            self.running[task] = node_id

    async def _invoke(self, executor: Any, ctx: NodeExecutionContext) -> Any:
        node = ctx.node
        try:
            ctx.inputs = self.resolver.resolve(
                node.id,
                getattr(executor, "input_ports", ()),
                getattr(executor, "input_defaults", None),
            )
            logger.debug("Node %s (%s) started with inputs %s", node.id, node.type, sorted(ctx.inputs))

            parse = getattr(executor, "parse_config", None)
            ctx.config = parse(node.config) if parse else dict(node.config)

            if inspect.iscoroutinefunction(executor.execute):
                call = executor.execute(ctx)
            else:
                call = run_in_thread(executor.execute, ctx)

            if self.owner.node_timeout:
                result = await asyncio.wait_for(call, self.owner.node_timeout)
            else:
                result = await call
            if inspect.isawaitable(result):
                result = await result
            return result
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise NodeTimeoutError(
                node.id, node.type, f"timed out after {self.owner.node_timeout}s"
            ) from e
        except NodeExecutionError:
            raise
        except Exception as e:
            raise NodeExecutionError(node.id, node.type, str(e) or type(e).__name__) from e

    def _settle(self, node_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            if self.cancel_event.is_set():
                self._mark_cancelled(node_id)
                return
            error: Optional[BaseException] = NodeExecutionError(
                node_id, self.nodes[node_id].type, "executor was cancelled"
            )
        else:
            error = task.exception()

        if error is None:
            self._on_success(node_id, task.result())
        elif self.cancel_event.is_set():
            self._mark_cancelled(node_id)
        else:
            self._on_failure(node_id, error)

    def _on_success(self, node_id: str, result: Any) -> None:
        self.state.mark_succeeded(node_id, result)
        self.store.set_result(node_id, result)
        logger.debug("Node %s succeeded: %s", node_id, summarize(result))
        self._publish(node_id, result)

        for dependent in self.plan.dependents(node_id):
            waiting = self.waiting[dependent]
            waiting.discard(node_id)
            if not waiting and self.state.status_of(dependent) == NodeStatus.PENDING:
                self.ready.append(dependent)
        self.ready.sort(key=self.position.__getitem__)

    def _on_failure(self, node_id: str, error: BaseException) -> None:
        self.state.mark_failed(node_id, error)
        logger.warning("Node %s failed: %s", node_id, error, exc_info=error)

        dependents = sorted(self.plan.transitive_dependents(node_id), key=self.position.__getitem__)
        for dependent in dependents:
            if self.state.status_of(dependent) == NodeStatus.PENDING:
                self.state.mark_skipped(dependent, f"upstream node {node_id} failed")
        if dependents:
            logger.info("Skipping %d node(s) downstream of %s: %s", len(dependents), node_id, dependents)

        if self.owner.fail_fast and self.halted_by is None:
            self.halted_by = node_id

    def _mark_cancelled(self, node_id: str) -> None:
        self.state.mark_skipped(node_id, "cancelled")
        self.cancelled_nodes += 1

    async def _wind_down(self) -> None:
        """Stop in-flight nodes after a cancellation or a fail-fast halt."""
        if self.cancel_event.is_set() and self.owner.cancel_grace_period:
            logger.info(
                "Run %s cancelled; waiting up to %.1fs for %d running node(s)",
                self.state.run_id, self.owner.cancel_grace_period, len(self.running)
            )
            done, _ = await asyncio.wait(set(self.running), timeout=self.owner.cancel_grace_period)
            for task in sorted(done, key=lambda t: self.position[self.running[t]]):
                node_id = self.running.pop(task)
                if not task.cancelled() and task.exception() is None:
                    # Finished within the grace period; keep the real result.
                    self._on_success(node_id, task.result())
                else:
                    self._mark_cancelled(node_id)

        pending = list(self.running)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in sorted(pending, key=lambda t: self.position[self.running[t]]):
            node_id = self.running.pop(task)
            if self.cancel_event.is_set():
                self._mark_cancelled(node_id)
            else:
                self.state.mark_skipped(node_id, f"aborted after node {self.halted_by} failed")

    def _skip_unfinished(self) -> None:
        for node_id in self.state.unfinished():
            if self.cancel_event.is_set():
                self._mark_cancelled(node_id)
            elif self.halted_by is not None:
                self.state.mark_skipped(node_id, f"aborted after node {self.halted_by} failed")
            else:
                self.state.mark_skipped(node_id, "not reached")

    # ------------------------------------------------------------------
    # Result publication
    # ------------------------------------------------------------------

    def _publish(self, node_id: str, value: Any) -> None:
        if self.on_node_result is None:
            return
        try:
            outcome = self.on_node_result(node_id, value)
        except Exception as e:
            self._record_publish_error(node_id, e)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self.publications[task] = node_id

    async def _publish_partial(self, node_id: str, value: Any) -> None:
        try:
            outcome = self.on_node_result(node_id, value)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self._record_publish_error(node_id, e)

    async def _drain_publications(self) -> None:
        if not self.publications:
            return
        tasks = list(self.publications)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                self._record_publish_error(self.publications[task], result)

    def _record_publish_error(self, node_id: str, error: Exception) -> None:
        logger.error("Result callback failed for node %s: %s", node_id, error, exc_info=error)
        self.state.publish_errors.append(NodeFailure(node_id, error))


async def run_flow(
    graph: Union[Graph, ExecutionPlan, Mapping[str, Any]],
    registry: NodeExecutorRegistry,
    runtime_inputs: Optional[Mapping[str, Any]] = None,
    on_node_result: Optional[NodeResultCallback] = None,
    **options: Any,
) -> RunOutcome:
    """Plan (unless given a plan) and run a graph with a fresh FlowExecutor."""
    plan = graph if isinstance(graph, ExecutionPlan) else build_plan(graph, registry)
    return await FlowExecutor(registry, **options).run(plan, runtime_inputs, on_node_result)
