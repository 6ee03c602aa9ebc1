import asyncio
import base64
import io
import threading

import pytest
from PIL import Image

from conftest import FakeModelClient, make_graph
from flow_engine import FlowExecutor, NodeStatus, NodeTimeoutError, RunStatus, build_plan, run_flow
from flow_engine.node_configs import LlmPromptConfig, TextCombinerConfig
from flow_engine.node_executors import create_default_registry, default_client_factory, stringify


def _png_data_url(color=(255, 0, 0, 128)):
    buffer = io.BytesIO()
    Image.new('RGBA', (4, 4), color).save(buffer, format='PNG')
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class PausingStreamClient(FakeModelClient):
    """Streams one chunk, then blocks in the worker thread until ``proceed`` is set."""

    def __init__(self):
        super().__init__()
        self.proceed = threading.Event()
        self.closed = threading.Event()

    def stream_chat(self, model, messages, options=None):
        self.calls.append(('stream_chat', model, messages, options))
        try:
            yield "one"
            self.proceed.wait(5)
            yield "two"
            yield "three"
        finally:
            self.closed.set()


def test_stringify_handles_non_strings():
    assert stringify("x") == "x"
    assert stringify(None) == ""
    assert stringify({"a": 1}) == '{"a": 1}'
    assert stringify(object).startswith("<class")


def test_llm_config_reads_camel_case_keys():
    config = LlmPromptConfig.from_dict({
        "model": "llama3",
        "systemPrompt": "be brief",
        "temperature": "0.2",
        "ollamaUrl": "http://gpu-box:11434",
        "options": {"top_p": 0.9},
    })

    assert config.system_prompt == "be brief"
    assert config.base_url == "http://gpu-box:11434"
    assert config.request_options() == {"top_p": 0.9, "temperature": 0.2}


def test_llm_config_rejects_bad_temperature():
    with pytest.raises(ValueError, match="Invalid temperature"):
        LlmPromptConfig.from_dict({"temperature": "warm"})


def test_combiner_separator_defaults_to_newline():
    assert TextCombinerConfig.from_dict({}).separator == "\n"
    assert TextCombinerConfig.from_dict({"separator": ""}).separator == ""


async def test_combiner_fills_template_placeholders(builtin_registry):
    graph = make_graph(
        [("a", "staticTextNode", {"text": "cats"}),
         ("b", "staticTextNode", {"text": "dogs"}),
         ("c", "textCombinerNode", {"template": "{left} and {right} but not {other}"})],
        [("a", "c", "text-out", "left"), ("b", "c", "text-out", "right")],
    )

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.results["c"] == "cats and dogs but not {other}"


async def test_combiner_appends_additional_text(builtin_registry):
    graph = make_graph(
        [("a", "staticTextNode", {"text": "first"}),
         ("c", "textCombinerNode", {"additionalText": "second", "separator": " | "})],
        [("a", "c", "text-out", "text-in")],
    )

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.results["c"] == "first | second"


async def test_output_node_encodes_structured_input(builtin_registry, registry):
    builtin_registry.register('constant', registry.lookup('constant'))
    graph = make_graph(
        [("a", "constant", {"value": {"score": 3}}), ("out", "markdownOutputNode")],
        [("a", "out")],
    )

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.results["out"] == '{"score": 3}'


async def test_llm_node_streams_partial_text(builtin_registry, fake_client):
    graph = make_graph(
        [("q", "textInputNode", {"inputText": "Say hello"}),
         ("llm", "llmPromptNode", {"model": "llama3", "prompt": "Answer politely.",
                                   "systemPrompt": "You are terse."})],
        [("q", "llm", "text-out", "text-in")],
    )
    published = []

    outcome = await run_flow(
        graph, builtin_registry,
        on_node_result=lambda node_id, value: published.append((node_id, value)),
    )

    assert outcome.results["llm"] == "Hello, world"
    llm_updates = [value for node_id, value in published if node_id == "llm"]
    assert llm_updates == ["Hello", "Hello, ", "Hello, world", "Hello, world"]

    kind, model, messages, _ = fake_client.calls[0]
    assert (kind, model) == ("stream_chat", "llama3")
    assert messages == [
        {"role": "system", "content": "You are terse."},
        {"role": "user", "content": "Answer politely.\n\nSay hello"},
    ]


async def test_llm_node_without_streaming(builtin_registry, fake_client):
    graph = make_graph([("llm", "llmPromptNode", {"model": "m", "prompt": "hi", "stream": False})])

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.results["llm"] == "Hello, world"
    assert fake_client.calls[0][0] == "send_chat"


async def test_llm_node_without_model_fails(builtin_registry):
    graph = make_graph(
        [("llm", "llmPromptNode", {"prompt": "hi"}), ("out", "textOutputNode")],
        [("llm", "out")],
    )

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.status == RunStatus.FAILED
    assert "No model selected" in outcome["llm"].error.args[0]
    assert outcome["out"].status == NodeStatus.SKIPPED


async def test_invalid_config_fails_only_that_node(builtin_registry):
    graph = make_graph([
        ("bad", "llmPromptNode", {"model": "m", "temperature": "hot"}),
        ("good", "staticTextNode", {"text": "ok"}),
    ])

    outcome = await run_flow(graph, builtin_registry)

    assert outcome["bad"].status == NodeStatus.FAILED
    assert outcome.results == {"good": "ok"}


async def test_image_input_normalizes_to_jpeg(builtin_registry):
    graph = make_graph([("img", "imageInputNode")])

    outcome = await run_flow(graph, builtin_registry, {"img": _png_data_url()})

    result = outcome.results["img"]
    assert result.startswith("data:image/jpeg;base64,")
    decoded = Image.open(io.BytesIO(base64.b64decode(result.split(",", 1)[1])))
    assert decoded.mode == "RGB"


async def test_image_input_without_image_is_empty(builtin_registry):
    outcome = await run_flow(make_graph([("img", "imageInputNode")]), builtin_registry)

    assert outcome.results["img"] == ""


async def test_image_input_rejects_garbage(builtin_registry):
    outcome = await run_flow(
        make_graph([("img", "imageInputNode", {"imageData": "data:image/png;base64,bm90IGFuIGltYWdl"})]),
        builtin_registry,
    )

    assert outcome["img"].status == NodeStatus.FAILED
    assert "Failed to load image" in str(outcome["img"].error)


async def test_image_llm_sends_bare_base64_to_ollama(builtin_registry, fake_client):
    graph = make_graph(
        [("img", "imageInputNode"),
         ("vision", "imageLlmPromptNode", {"model": "llava", "prompt": "What is this?"}),
         ("out", "imageDescriptionOutputNode")],
        [("img", "vision", "image-out", "image-in"), ("vision", "out", "text-out", "text-in")],
    )

    outcome = await run_flow(graph, builtin_registry, {"img": _png_data_url()})

    assert outcome.results["out"] == "a small red square"
    kind, model, prompt, images, _ = fake_client.calls[0]
    assert (kind, model, prompt) == ("generate_with_images", "llava", "What is this?")
    assert not images[0].startswith("data:")


async def test_image_llm_keeps_data_url_for_openai():
    client = FakeModelClient(api_type='openai')
    registry = create_default_registry(lambda base_url=None: client)
    graph = make_graph(
        [("img", "imageInputNode"), ("vision", "imageLlmPromptNode", {"model": "gpt-4o"})],
        [("img", "vision", "default", "image")],
    )

    await run_flow(graph, registry, {"img": _png_data_url()})

    _, _, prompt, images, _ = client.calls[0]
    assert prompt == "Describe this image."
    assert images[0].startswith("data:image/jpeg;base64,")


async def test_image_llm_without_image_fails(builtin_registry):
    outcome = await run_flow(
        make_graph([("vision", "imageLlmPromptNode", {"model": "llava"})]), builtin_registry
    )

    assert "No image provided" in str(outcome["vision"].error)


def test_default_client_factory_caches_per_url():
    factory = default_client_factory("http://localhost:11434", api_type="openai")

    first = factory()
    assert factory(None) is first
    assert factory("http://other:8000").base_url == "http://other:8000"
    assert first.api_type == "openai"


def test_llm_config_reads_response_format():
    assert LlmPromptConfig.from_dict({}).format is None
    assert LlmPromptConfig.from_dict({"format": "json"}).format == "json"
    assert LlmPromptConfig.from_dict({"format": {"type": "object"}}).format == {"type": "object"}
    with pytest.raises(ValueError, match="format must be"):
        LlmPromptConfig.from_dict({"format": 42})


async def test_llm_node_with_format_returns_parsed_json(builtin_registry, fake_client):
    schema = {"type": "object", "properties": {"label": {"type": "string"}}}
    graph = make_graph([("llm", "llmPromptNode", {"model": "llama3", "prompt": "tag it", "format": schema})])

    outcome = await run_flow(graph, builtin_registry)

    assert outcome.results["llm"] == {"label": "cat"}
    kind, model, messages, sent_format, _ = fake_client.calls[0]
    assert (kind, model, sent_format) == ("send_structured_chat", "llama3", schema)
    assert messages == [{"role": "user", "content": "tag it"}]


async def test_llm_node_with_format_rejects_non_json_reply():
    client = FakeModelClient(structured_reply="sure, here you go")
    registry = create_default_registry(lambda base_url=None: client)
    graph = make_graph([("llm", "llmPromptNode", {"model": "m", "prompt": "hi", "format": "json"})])

    outcome = await run_flow(graph, registry)

    assert outcome["llm"].status == NodeStatus.FAILED
    assert "invalid JSON" in str(outcome["llm"].error)


async def test_stream_timeout_reports_timeout_and_closes_stream():
    client = PausingStreamClient()
    registry = create_default_registry(lambda base_url=None: client)
    graph = make_graph([("llm", "llmPromptNode", {"model": "m", "prompt": "hi"})])

    outcome = await run_flow(graph, registry, node_timeout=0.3)

    assert outcome["llm"].status == NodeStatus.FAILED
    assert isinstance(outcome["llm"].error, NodeTimeoutError)
    assert not client.closed.is_set()

    client.proceed.set()
    assert client.closed.wait(5)


async def test_cancel_mid_stream_keeps_published_partials():
    client = PausingStreamClient()
    registry = create_default_registry(lambda base_url=None: client)
    plan = build_plan(make_graph([("llm", "llmPromptNode", {"model": "m", "prompt": "hi"})]))
    first_chunk = asyncio.Event()
    published = []

    def on_result(node_id, value):
        published.append(value)
        first_chunk.set()

    executor = FlowExecutor(registry, cancel_grace_period=2.0)
    task = asyncio.create_task(executor.run(plan, on_node_result=on_result))
    await asyncio.wait_for(first_chunk.wait(), timeout=5)
    executor.cancel()
    client.proceed.set()
    outcome = await asyncio.wait_for(task, timeout=5)

    assert outcome.status == RunStatus.CANCELLED
    assert outcome["llm"].status == NodeStatus.SKIPPED
    assert outcome["llm"].skip_reason == "cancelled"
    assert published == ["one"]
    assert client.closed.wait(5)


async def test_image_input_refuses_file_paths(builtin_registry, tmp_path):
    path = tmp_path / "secret.png"
    Image.new('RGB', (4, 4)).save(path)

    outcome = await run_flow(make_graph([("img", "imageInputNode")]), builtin_registry, {"img": str(path)})

    assert outcome["img"].status == NodeStatus.FAILED
    assert "data URL or raw bytes" in str(outcome["img"].error)
    assert "img" not in outcome.results
