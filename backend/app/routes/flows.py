"""
Flow routes: planning, running, observing and cancelling flow runs.
"""
import json
import queue
import logging
from flask import Blueprint, Response, stream_with_context
from app.utils.request_validators import RequestField, extract_json_fields, parse_bool
from app.utils.route_decorators import handle_route_errors, success_response

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ('completed', 'failed', 'cancelled')
KEEPALIVE_SECONDS = 15


def _is_mapping(value):
    return isinstance(value, dict)


def init_routes(run_manager):
    """Initialize routes with dependencies."""
    bp = Blueprint('flows', __name__)

    @bp.route('/flows/node-types', methods=['GET'])
    @handle_route_errors("listing node types")
    def list_node_types():
        return {"node_types": run_manager.registry.node_types()}

    @bp.route('/flows/plan', methods=['POST'])
    @handle_route_errors("building execution plan")
    def plan_flow():
        """Validate a graph and return its execution plan."""
        data = extract_json_fields(
            RequestField('graph', required=True, validator=_is_mapping,
                         error_message="Missing graph"),
        )
        plan = run_manager.plan(data['graph'])
        return success_response(plan=plan.to_dict())

    @bp.route('/flows/run', methods=['POST'])
    @handle_route_errors("starting flow run")
    def run_flow():
        """Start a run; with ``wait`` the finished outcome is returned directly."""
        data = extract_json_fields(
            RequestField('graph', required=True, validator=_is_mapping,
                         error_message="Missing graph"),
            RequestField('inputs', default={}, validator=_is_mapping),
            RequestField('wait', default=False, transform=parse_bool),
        )

        if data['wait']:
            record = run_manager.run_inline(data['graph'], data['inputs'])
            return success_response(run_id=record.run_id, run=record.to_dict())

        run_id = run_manager.start_run(data['graph'], data['inputs'])
        return success_response(run_id=run_id, message="Flow run started")

    @bp.route('/flows/runs', methods=['GET'])
    @handle_route_errors("listing runs")
    def list_runs():
        return {"runs": run_manager.list_runs()}

    @bp.route('/flows/runs/<run_id>', methods=['GET'])
    @handle_route_errors("getting run status")
    def get_run(run_id):
        record = run_manager.get_run(run_id)
        if record is None:
            return {"error": "Run not found"}, 404
        return record.to_dict()

    @bp.route('/flows/runs/<run_id>/events', methods=['GET'])
    @handle_route_errors("streaming run events")
    def stream_run_events(run_id):
        """Real-time node output for a run via Server-Sent Events."""
        if run_manager.get_run(run_id) is None:
            return {"error": "Run not found"}, 404

        events = run_manager.hub.subscribe(run_id)

        def generate():
            try:
                while True:
                    try:
                        event = events.get(timeout=KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {json.dumps(event)}\n\n"
                    if event.get('event') == 'run_finished':
                        break
            finally:
                run_manager.hub.unsubscribe(run_id, events)

        return Response(
            stream_with_context(generate()),
            mimetype='text/event-stream',
            headers={
                'Cache-Control': 'no-cache',
                'X-Accel-Buffering': 'no'
            }
        )

    @bp.route('/flows/runs/<run_id>/cancel', methods=['POST'])
    @handle_route_errors("cancelling flow run")
    def cancel_run(run_id):
        if not run_manager.cancel_run(run_id):
            return {"error": "Run not found"}, 404
        return success_response(message="Run cancellation requested")

    return bp
