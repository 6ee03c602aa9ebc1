import os


def _env_float(name, default):
    value = os.getenv(name, "")
    if value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name, default):
    value = os.getenv(name, "")
    if value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


HOST = os.getenv("FLOW_HOST", "0.0.0.0")
PORT = _env_int("FLOW_PORT", 5000)

MODEL_BASE_URL = os.getenv("FLOW_MODEL_URL", "http://localhost:11434")
MODEL_API_TYPE = os.getenv("FLOW_MODEL_API_TYPE", "ollama")
MODEL_API_KEY = os.getenv("FLOW_MODEL_API_KEY", "")
MODEL_REQUEST_TIMEOUT = _env_float("FLOW_MODEL_TIMEOUT", 120.0)

NODE_TIMEOUT_SECONDS = _env_float("FLOW_NODE_TIMEOUT", None)  # None = no per-node timeout
MAX_CONCURRENT_NODES = _env_int("FLOW_MAX_CONCURRENCY", 0)  # 0 = unlimited
CANCEL_GRACE_SECONDS = _env_float("FLOW_CANCEL_GRACE", 5.0)

RUN_HISTORY_LIMIT = _env_int("FLOW_RUN_HISTORY", 50)
