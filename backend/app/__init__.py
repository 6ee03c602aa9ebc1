"""
Flask host application for running flows over HTTP.
"""
import logging
from flask import Flask
from flask_cors import CORS

from app.middleware import register_error_handlers
from app.routes import register_blueprints

logger = logging.getLogger(__name__)


def create_app(run_manager, max_content_length=None):
    """
    Build the Flask app around an already composed RunManager.

    Args:
        run_manager: RunManager holding the executor registry and result hub
        max_content_length: Optional request size limit (None = no limit)
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = max_content_length
    CORS(app)

    register_error_handlers(app)
    register_blueprints(app, run_manager)

    @app.route('/health', methods=['GET'])
    def health():
        return {
            "status": "ok",
            "node_types": len(run_manager.registry),
            "publication": run_manager.hub.get_stats(),
        }

    return app
