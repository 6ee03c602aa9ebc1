"""
Constants shared across the flow execution runtime.
"""

from typing import Dict, Tuple


DEFAULT_PORT = "default"


class NodePort:
    """
    Port name constants for node connections.

    The editor emits handle ids such as ``text-in``; executors are written
    against the short names. Both sides agree through the alias chains below.
    """

    DEFAULT = DEFAULT_PORT
    TEXT = "text"
    TEXT_IN = "text-in"
    IMAGE = "image"
    IMAGE_IN = "image-in"
    PROMPT = "prompt"
    PROMPT_IN = "prompt-in"
    SYSTEM = "system"
    SYSTEM_IN = "system-in"


# Fixed fallback chains, first present key wins. Not user-configurable.
PORT_ALIASES: Dict[str, Tuple[str, ...]] = {
    NodePort.TEXT: (NodePort.TEXT, NodePort.TEXT_IN, DEFAULT_PORT),
    NodePort.IMAGE: (NodePort.IMAGE, NodePort.IMAGE_IN, DEFAULT_PORT),
    NodePort.PROMPT: (NodePort.PROMPT, NodePort.PROMPT_IN),
    NodePort.SYSTEM: (NodePort.SYSTEM, NodePort.SYSTEM_IN),
}

# Config key receiving a runtime input when the executor declares none.
DEFAULT_RUNTIME_INPUT_KEY = "runtimeInput"
