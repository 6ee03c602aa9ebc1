"""
Built-in node executors for the flow runtime.

Nothing here registers itself on import; the host composes a registry at
startup through ``create_default_registry``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterator, List, Optional

from models.ollama_client import OllamaClient
from utils.async_helpers import get_worker_pool, run_in_thread
from utils.image_utils import image_to_base64, load_image, strip_data_url
from utils.logging_utils import summarize

from .constants import NodePort
from .context import NodeExecutionContext
from .node_configs import (
    ImageInputConfig,
    ImageLlmPromptConfig,
    LlmPromptConfig,
    OutputConfig,
    StaticTextConfig,
    TextCombinerConfig,
    TextInputConfig,
)
from .registry import BaseNodeExecutor, NodeExecutorRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[str]], OllamaClient]

_PLACEHOLDER_RE = re.compile(r'\{([^}]+)\}')
_STREAM_END = object()


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


class TextInputNodeExecutor(BaseNodeExecutor):
    node_type = 'textInputNode'
    config_class = TextInputConfig
    runtime_input_key = 'inputText'

    async def execute(self, ctx: NodeExecutionContext) -> str:
        return ctx.config.input_text


class ImageInputNodeExecutor(BaseNodeExecutor):
    """
    Normalizes an uploaded image (data URL or raw bytes) to an RGB JPEG data URL.

    Plain strings are rejected rather than opened as paths, since graph
    documents come from remote clients.
    """

    node_type = 'imageInputNode'
    config_class = ImageInputConfig
    runtime_input_key = 'imageData'

    async def execute(self, ctx: NodeExecutionContext) -> str:
        source = ctx.config.image_data
        if not source:
            logger.info("Image input node %s has no image", ctx.node_id)
            return ""
        if isinstance(source, str) and not source.startswith("data:"):
            raise ValueError("Image input must be a data URL or raw bytes")
        image = await run_in_thread(load_image, source)
        return image_to_base64(image)


class StaticTextNodeExecutor(BaseNodeExecutor):
    node_type = 'staticTextNode'
    config_class = StaticTextConfig

    async def execute(self, ctx: NodeExecutionContext) -> str:
        return ctx.config.text


class TextCombinerNodeExecutor(BaseNodeExecutor):
    """
    Joins upstream text.

    With a template, ``{port}`` placeholders are replaced by the input on that
    port; unknown placeholders are left untouched. Without one, the ``text``
    input and ``additionalText`` are joined with the separator.
    """

    node_type = 'textCombinerNode'
    config_class = TextCombinerConfig
    input_ports = (NodePort.TEXT,)

    async def execute(self, ctx: NodeExecutionContext) -> str:
        config: TextCombinerConfig = ctx.config
        if config.template:
            values = {port: stringify(value) for port, value in ctx.inputs.items()}
            return _PLACEHOLDER_RE.sub(
                lambda m: values.get(m.group(1), m.group(0)),
                config.template
            )

        parts = [stringify(ctx.inputs.get(NodePort.TEXT)), config.additional_text]
        return config.separator.join(part for part in parts if part)


class _ModelNodeExecutor(BaseNodeExecutor):
    def __init__(self, client_factory: ClientFactory):
        self.client_factory = client_factory

    @staticmethod
    def _require_model(ctx: NodeExecutionContext, model: str) -> None:
        if not model:
            raise ValueError(f"No model selected for node {ctx.node_id}")


class LlmPromptNodeExecutor(_ModelNodeExecutor):
    """
    Chat completion over the incoming text.

    Streams by default and publishes the accumulated text after every chunk,
    so hosts can render the answer while it is being generated.
    """

    node_type = 'llmPromptNode'
    config_class = LlmPromptConfig
    input_ports = (NodePort.TEXT, NodePort.SYSTEM)

    async def execute(self, ctx: NodeExecutionContext) -> Any:
        config: LlmPromptConfig = ctx.config
        self._require_model(ctx, config.model)

        messages = self._build_messages(config, ctx)
        if not messages:
            logger.warning("LLM node %s has neither prompt nor input text", ctx.node_id)
            return ""

        client = self.client_factory(config.base_url)
        options = config.request_options()
        ctx.raise_if_cancelled()

        if config.format:
            reply = await run_in_thread(
                client.send_structured_chat, config.model, messages, config.format, options
            )
            try:
                return json.loads(reply)
            except ValueError as e:
                raise ValueError(f"Model returned invalid JSON: {summarize(reply)}") from e

        if not config.stream:
            return await run_in_thread(client.send_chat, config.model, messages, options)
        return await self._collect_stream(ctx, client.stream_chat(config.model, messages, options))

    @staticmethod
    async def _collect_stream(ctx: NodeExecutionContext, stream: Iterator[str]) -> str:
        chunks: List[str] = []
        pending: Optional[Future] = None
        try:
            while True:
                pending = get_worker_pool().submit(next, stream, _STREAM_END)
                chunk = await asyncio.wrap_future(pending)
                pending = None
                if chunk is _STREAM_END:
                    break
                ctx.raise_if_cancelled()
                chunks.append(chunk)
                await ctx.update_output("".join(chunks))
        finally:
            # A generator cannot be closed while next() is still running on it
            if pending is not None and not pending.done():
                pending.add_done_callback(lambda _: stream.close())
            else:
                await run_in_thread(stream.close)
        return "".join(chunks)

    @staticmethod
    def _build_messages(config: LlmPromptConfig, ctx: NodeExecutionContext) -> List[Dict[str, str]]:
        system = stringify(ctx.inputs.get(NodePort.SYSTEM)) or config.system_prompt
        user_text = stringify(ctx.inputs.get(NodePort.TEXT))
        if config.prompt and user_text:
            user_text = f"{config.prompt}\n\n{user_text}"
        else:
            user_text = user_text or config.prompt

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if user_text:
            messages.append({"role": "user", "content": user_text})
        return messages


class ImageLlmPromptNodeExecutor(_ModelNodeExecutor):
    node_type = 'imageLlmPromptNode'
    config_class = ImageLlmPromptConfig
    input_ports = (NodePort.IMAGE, NodePort.TEXT)

    async def execute(self, ctx: NodeExecutionContext) -> str:
        config: ImageLlmPromptConfig = ctx.config
        self._require_model(ctx, config.model)

        image = ctx.inputs.get(NodePort.IMAGE)
        if not image:
            raise ValueError(f"No image provided to node {ctx.node_id}")

        prompt = stringify(ctx.inputs.get(NodePort.TEXT)) or config.prompt or "Describe this image."
        client = self.client_factory(config.base_url)
        payload = strip_data_url(image) if client.api_type == 'ollama' else image
        options = {"temperature": config.temperature} if config.temperature is not None else {}

        ctx.raise_if_cancelled()
        return await run_in_thread(client.generate_with_images, config.model, prompt, [payload], options)


class OutputNodeExecutor(BaseNodeExecutor):
    """Passes its text input through as a string (non-strings are JSON-encoded)."""

    node_type = 'textOutputNode'
    config_class = OutputConfig
    input_ports = (NodePort.TEXT,)

    async def execute(self, ctx: NodeExecutionContext) -> str:
        return stringify(ctx.get_input(NodePort.TEXT, NodePort.TEXT_IN, NodePort.DEFAULT))


class MarkdownOutputNodeExecutor(OutputNodeExecutor):
    node_type = 'markdownOutputNode'


class ImageDescriptionOutputNodeExecutor(OutputNodeExecutor):
    node_type = 'imageDescriptionOutputNode'


def default_client_factory(
    base_url: str,
    api_key: str = "",
    api_type: str = "ollama",
    timeout: float = 120.0,
) -> ClientFactory:
    """Build a factory handing out one client per distinct base URL."""
    clients: Dict[str, OllamaClient] = {}

    def factory(url: Optional[str] = None) -> OllamaClient:
        key = url or base_url
        if key not in clients:
            clients[key] = OllamaClient(key, api_key=api_key, api_type=api_type, timeout=timeout)
        return clients[key]

    return factory


def create_default_registry(client_factory: Optional[ClientFactory] = None) -> NodeExecutorRegistry:
    """
    Register every built-in node type.

    Args:
        client_factory: Callable returning a model client for an optional
            base URL override. Defaults to a local Ollama server.
    """
    factory = client_factory or default_client_factory("http://localhost:11434")
    registry = NodeExecutorRegistry()
    registry.register_all([
        TextInputNodeExecutor(),
        ImageInputNodeExecutor(),
        StaticTextNodeExecutor(),
        TextCombinerNodeExecutor(),
        LlmPromptNodeExecutor(factory),
        ImageLlmPromptNodeExecutor(factory),
        OutputNodeExecutor(),
        MarkdownOutputNodeExecutor(),
        ImageDescriptionOutputNodeExecutor(),
    ])
    return registry
