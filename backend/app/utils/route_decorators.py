"""
Route decorators for standardized error handling and response formatting.

Handlers return plain dicts (or ``(dict, status)`` tuples) and raise
ValueError for client mistakes; the decorator turns both into JSON responses.
Structural graph errors carry enough detail for the editor to highlight the
offending nodes.
"""

import logging
from functools import wraps
from flask import jsonify

from flow_engine.schema import (
    CycleDetectedError,
    DanglingEdgeError,
    DuplicateNodeIdError,
    UnknownNodeTypeError,
)

logger = logging.getLogger(__name__)


def _error_payload(error):
    """
    Build the JSON body for a client error.

    Returns:
        dict with ``error`` and, for graph errors, ``error_type`` plus the
        node ids involved.
    """
    payload = {"error": str(error)}
    if isinstance(error, CycleDetectedError):
        payload.update(error_type="cycle_detected", node_ids=error.node_ids, cycle=error.cycle)
    elif isinstance(error, DanglingEdgeError):
        payload.update(error_type="dangling_edge", edge=error.edge.to_dict(),
                       node_ids=[error.missing_node_id])
    elif isinstance(error, DuplicateNodeIdError):
        payload.update(error_type="duplicate_node_id", node_ids=[error.node_id])
    elif isinstance(error, UnknownNodeTypeError):
        payload.update(error_type="unknown_node_type", node_type=error.node_type,
                       node_ids=[error.node_id] if error.node_id else [])
    return payload


def handle_route_errors(route_description=None):
    """
    Decorator to standardize error handling across all routes.

    Handles:
    - ValueError (including graph validation errors) → 400 Bad Request
    - Exception → 500 Internal Server Error
    - Automatic JSON response formatting via jsonify()

    Args:
        route_description: Optional human-readable description for logging.
                          If not provided, defaults to the function name.

    Usage:
        @bp.route('/flows/plan', methods=['POST'])
        @handle_route_errors("building execution plan")
        def plan_flow():
            return {"success": True, "plan": ...}
    """
    def decorator(f):
        desc = route_description or f.__name__

        @wraps(f)
        def wrapper(*args, **kwargs):
            try:
                result = f(*args, **kwargs)
                return _format_response(result)
            except ValueError as e:
                logger.warning("%s - %s: %s", desc, type(e).__name__, str(e))
                return jsonify(_error_payload(e)), 400
            except Exception as e:
                logger.exception("Error in %s: %s", desc, e)
                return jsonify({"error": str(e)}), 500

        return wrapper

    return decorator


def _format_response(result):
    # Already a Response object
    if hasattr(result, 'status_code'):
        return result

    if isinstance(result, tuple):
        data = result[0]
        rest = result[1:]
        if isinstance(data, (dict, list)):
            return (jsonify(data), *rest)
        return result

    if isinstance(result, (dict, list)):
        return jsonify(result)

    return result


def success_response(data=None, message=None, **kwargs):
    """
    Build a standardized success response dictionary.

    Args:
        data: Optional data payload to include in response
        message: Optional success message
        **kwargs: Additional fields to include in response

    Returns:
        dict: Response dictionary with 'success': True and optional fields
    """
    response = {"success": True}

    if message:
        response["message"] = message

    if data is not None:
        response["data"] = data

    response.update(kwargs)
    return response
