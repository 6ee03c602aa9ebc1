"""
Flow Control Hub - Centralized routing of per-node run updates.

The flow executor only knows a ``(node_id, result)`` callback. This hub turns
that callback into a fan-out: registered callbacks, subscriber queues (used by
the server-sent events route), and a latest-output cache per run.

Key Features:
- One publisher callable per run, safe to call from concurrent node tasks
- Thread-safe subscriber queues for consumers on other threads
- Terminal ``run_finished`` event carrying the outcome summary
- Routing stats
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from flow_engine.state import to_jsonable
from utils.logging_utils import summarize

logger = logging.getLogger(__name__)


# ============================================================================
# Data Flow Models
# ============================================================================

@dataclass
class NodeUpdate:
    """A single published node result (intermediate or final)."""
    run_id: str
    node_id: str
    output: Any
    sequence_num: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event': 'node_output',
            'run_id': self.run_id,
            'node_id': self.node_id,
            'output': to_jsonable(self.output),
            'sequence_num': self.sequence_num,
            'timestamp': self.timestamp,
        }


def run_finished_event(run_id: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
    return {'event': 'run_finished', 'run_id': run_id, 'outcome': outcome}


# ============================================================================
# Flow Control Hub
# ============================================================================

class FlowControlHub:
    """
    Centralized hub for routing node updates to their consumers.

    Example Usage:
        hub = FlowControlHub()
        events = hub.subscribe(run_id)

        outcome = await FlowExecutor(registry).run(
            plan, inputs, on_node_result=hub.publisher(run_id)
        )
        hub.close_run(run_id, outcome.to_dict())
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[queue.Queue]] = {}
        self._callbacks: Dict[str, List[Callable[[NodeUpdate], None]]] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._sequence: Dict[str, int] = {}
        self._finished: Dict[str, Dict[str, Any]] = {}
        self._stats = {
            'total_routed': 0,
            'callback_invocations': 0,
            'errors': 0
        }

        logger.info("Flow Control Hub initialized")

    # ========================================================================
    # Registration
    # ========================================================================

    def subscribe(self, run_id: str) -> queue.Queue:
        """
        Subscribe to updates for a run.

        Late subscribers first receive the latest output of every node, and
        the terminal event if the run already finished.
        """
        q: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(run_id, []).append(q)
            for node_id, output in self._latest.get(run_id, {}).items():
                q.put(NodeUpdate(run_id, node_id, output).to_dict())
            if run_id in self._finished:
                q.put(self._finished[run_id])
        return q

    def unsubscribe(self, run_id: str, q: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(run_id, [])
            if q in subscribers:
                subscribers.remove(q)

    def add_callback(self, run_id: str, callback: Callable[[NodeUpdate], None]) -> None:
        with self._lock:
            self._callbacks.setdefault(run_id, []).append(callback)

    # ========================================================================
    # Routing
    # ========================================================================

    def publisher(self, run_id: str) -> Callable[[str, Any], None]:
        """Return the ``(node_id, result)`` callable handed to the flow executor."""
        def publish(node_id: str, output: Any) -> None:
            self.route_update(run_id, node_id, output)
        return publish

    def route_update(self, run_id: str, node_id: str, output: Any) -> NodeUpdate:
        with self._lock:
            sequence = self._sequence.get(run_id, 0)
            self._sequence[run_id] = sequence + 1
            update = NodeUpdate(run_id, node_id, output, sequence_num=sequence)
            self._latest.setdefault(run_id, {})[node_id] = output
            subscribers = list(self._subscribers.get(run_id, []))
            callbacks = list(self._callbacks.get(run_id, []))
            self._stats['total_routed'] += 1

        logger.debug("Run %s update #%d from %s: %s", run_id, sequence, node_id, summarize(output))
        if subscribers:
            payload = update.to_dict()
            for q in subscribers:
                q.put(payload)

        for callback in callbacks:
            try:
                callback(update)
                stat = 'callback_invocations'
            except Exception as e:
                logger.exception("Callback failed for %s/%s: %s", run_id, node_id, e)
                stat = 'errors'
            with self._lock:
                self._stats[stat] += 1
        return update

    def close_run(self, run_id: str, outcome: Dict[str, Any]) -> None:
        """Emit the terminal event and drop callbacks for ``run_id``."""
        event = run_finished_event(run_id, outcome)
        with self._lock:
            self._finished[run_id] = event
            subscribers = list(self._subscribers.get(run_id, []))
            self._callbacks.pop(run_id, None)
        for q in subscribers:
            q.put(event)

    def forget_run(self, run_id: str) -> None:
        with self._lock:
            for store in (self._subscribers, self._callbacks, self._latest, self._sequence, self._finished):
                store.pop(run_id, None)

    # ========================================================================
    # Introspection
    # ========================================================================

    def latest_outputs(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._latest.get(run_id, {}))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._stats)

    def reset_stats(self) -> None:
        with self._lock:
            for key in self._stats:
                self._stats[key] = 0
