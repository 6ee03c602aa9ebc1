"""
Route blueprints registration.
"""
from . import flows


def register_blueprints(app, run_manager):
    """Register all route blueprints with the Flask app."""
    flows_bp = flows.init_routes(run_manager)
    app.register_blueprint(flows_bp)
