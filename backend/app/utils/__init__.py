"""
Utility functions for the HTTP layer.
"""
from .request_validators import RequestField, extract_json_fields
from .route_decorators import handle_route_errors, success_response

__all__ = ['RequestField', 'extract_json_fields', 'handle_route_errors', 'success_response']
