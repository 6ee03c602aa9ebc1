import json
import logging
import os
import re
from typing import Any, Optional

_DATA_URL_RE = re.compile(r"^(data:[\w/+.-]+;base64,)(.*)$", re.DOTALL)


class OneLineFormatter(logging.Formatter):
    """Collapses whitespace so multi-line node output stays on one log line."""

    def __init__(self, fmt=None, datefmt=None, style="%", max_len: Optional[int] = None):
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self.max_len = max_len
        self._ws_re = re.compile(r"\s+")

    def format(self, record: logging.LogRecord) -> str:
        msg = self._ws_re.sub(" ", super().format(record)).strip()
        if self.max_len and len(msg) > self.max_len:
            msg = msg[: self.max_len] + " …(truncated)"
        return msg


def compact_json(data) -> str:
    try:
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(data)


def summarize(value: Any, limit: int = 120) -> str:
    """
    Short printable form of a node value for log lines.

    Base64 data URLs keep only their header and payload size; everything else
    is rendered as compact JSON and clipped to ``limit`` characters.
    """
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str):
        match = _DATA_URL_RE.match(value)
        if match:
            return f"{match.group(1)}<{len(match.group(2))} chars>"
        text = value
    else:
        text = compact_json(value)
    if len(text) > limit:
        return text[:limit] + "…"
    return text


def _env_log_settings():
    level_name = os.getenv("FLOW_LOG_LEVEL", "INFO").upper()
    max_len_env = os.getenv("FLOW_LOG_MAX_LEN", "0")
    try:
        max_len = int(max_len_env) if max_len_env else 0
    except ValueError:
        max_len = 0
    return getattr(logging, level_name, logging.INFO), max_len


def setup_logging(level: Optional[int] = None, max_len: Optional[int] = None) -> None:
    """
    Configure the root logger once.

    Arguments default to FLOW_LOG_LEVEL and FLOW_LOG_MAX_LEN.
    """
    env_level, env_max_len = _env_log_settings()
    level = env_level if level is None else level
    max_len = env_max_len if max_len is None else max_len

    root = logging.getLogger()
    # If already configured, don't add duplicate handlers
    if root.handlers:
        root.setLevel(level)
        return

    root.setLevel(level)
    handler = logging.StreamHandler()
    fmt = "%(asctime)s %(levelname)s [%(name)s] - %(message)s"
    handler.setFormatter(OneLineFormatter(fmt=fmt, datefmt="%H:%M:%S", max_len=max_len or None))
    root.addHandler(handler)

    # Request logs and HTTP client chatter only above INFO
    for noisy in ("urllib3", "PIL", "werkzeug"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, level))
