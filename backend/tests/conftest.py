"""
Shared fixtures for the flow runtime tests.

Test executors are tiny and deterministic; none of them touch the network.
"""
import asyncio

import pytest

from flow_engine import BaseNodeExecutor, NodeExecutorRegistry
from flow_engine.node_executors import create_default_registry


def make_graph(nodes, edges=()):
    """
    Build an editor-shaped graph document.

    ``nodes`` is a list of ``(id, type)`` or ``(id, type, config)`` tuples,
    ``edges`` a list of ``(source, target)`` or
    ``(source, target, source_handle, target_handle)`` tuples.
    """
    doc_nodes = []
    for entry in nodes:
        node_id, node_type = entry[0], entry[1]
        config = entry[2] if len(entry) > 2 else {}
        doc_nodes.append({"id": node_id, "type": node_type, "data": {"config": config}})

    doc_edges = []
    for entry in edges:
        edge = {"source": entry[0], "target": entry[1]}
        if len(entry) > 2:
            edge["sourceHandle"] = entry[2]
            edge["targetHandle"] = entry[3]
        doc_edges.append(edge)
    return {"nodes": doc_nodes, "edges": doc_edges}


class ConstantExecutor(BaseNodeExecutor):
    """Returns ``config['value']``."""
    node_type = 'constant'

    async def execute(self, ctx):
        return ctx.config.get('value')


class UppercaseExecutor(BaseNodeExecutor):
    node_type = 'uppercase'
    input_ports = ('text',)

    async def execute(self, ctx):
        return str(ctx.inputs['text']).upper()


class FailingExecutor(BaseNodeExecutor):
    node_type = 'fail'

    async def execute(self, ctx):
        raise RuntimeError(ctx.config.get('message', 'boom'))


class InputsExecutor(BaseNodeExecutor):
    """Returns a copy of the inputs it was handed."""
    node_type = 'inputs'

    async def execute(self, ctx):
        return dict(ctx.inputs)


class RecordingRegistry(NodeExecutorRegistry):
    """Registry that remembers which node ids reached an executor."""

    def __init__(self):
        super().__init__()
        self.invoked = []

    def wrap(self, executor):
        registry = self
        original = executor.execute

        async def execute(ctx):
            registry.invoked.append(ctx.node_id)
            return await original(ctx)

        executor.execute = execute
        return executor


@pytest.fixture
def registry():
    reg = RecordingRegistry()
    for executor in (ConstantExecutor(), UppercaseExecutor(), FailingExecutor(), InputsExecutor()):
        reg.register(executor.node_type, reg.wrap(executor))
    return reg


class FakeModelClient:
    """Stands in for OllamaClient inside node executors."""

    def __init__(self, chunks=("Hello", ", ", "world"), api_type='ollama', structured_reply='{"label": "cat"}'):
        self.chunks = list(chunks)
        self.structured_reply = structured_reply
        self.api_type = api_type
        self.calls = []

    def send_chat(self, model, messages, options=None):
        self.calls.append(('send_chat', model, messages, options))
        return "".join(self.chunks)

    def send_structured_chat(self, model, messages, format, options=None):
        self.calls.append(('send_structured_chat', model, messages, format, options))
        return self.structured_reply

    def stream_chat(self, model, messages, options=None):
        self.calls.append(('stream_chat', model, messages, options))
        for chunk in self.chunks:
            yield chunk

    def generate_with_images(self, model, prompt, images, options=None):
        self.calls.append(('generate_with_images', model, prompt, images, options))
        return "a small red square"


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
def builtin_registry(fake_client):
    return create_default_registry(lambda base_url=None: fake_client)


@pytest.fixture
def gate():
    """Named asyncio events for ordering assertions across node tasks."""
    events = {}

    def get(name):
        if name not in events:
            events[name] = asyncio.Event()
        return events[name]

    return get
