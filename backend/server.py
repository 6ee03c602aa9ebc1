import logging

import config
from app import create_app
from app.services import RunManager
from flow_control import FlowControlHub
from flow_engine.node_executors import create_default_registry, default_client_factory
from utils.async_helpers import shutdown_thread_pools
from utils.logging_utils import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Registry is composed once here and only read afterwards
registry = create_default_registry(
    default_client_factory(
        config.MODEL_BASE_URL,
        api_key=config.MODEL_API_KEY,
        api_type=config.MODEL_API_TYPE,
        timeout=config.MODEL_REQUEST_TIMEOUT,
    )
)
flow_hub = FlowControlHub()
run_manager = RunManager(
    registry,
    flow_hub,
    node_timeout=config.NODE_TIMEOUT_SECONDS,
    max_concurrency=config.MAX_CONCURRENT_NODES,
    cancel_grace_period=config.CANCEL_GRACE_SECONDS,
    history_limit=config.RUN_HISTORY_LIMIT,
)
app = create_app(run_manager)


if __name__ == '__main__':
    logger.info("Registered node types: %s", ", ".join(registry.node_types()))
    logger.info("Model server: %s (%s)", config.MODEL_BASE_URL, config.MODEL_API_TYPE)
    try:
        app.run(host=config.HOST, port=config.PORT, threaded=True)
    finally:
        shutdown_thread_pools()
