import pytest

from conftest import make_graph
from flow_engine import PortOutputs, build_plan
from flow_engine.data_store import NodeOutputStore
from flow_engine.resolver import InputResolver, first_present


def _resolver(graph, results):
    plan = build_plan(graph)
    store = NodeOutputStore()
    for node_id, result in results.items():
        store.set_result(node_id, result)
    return InputResolver(plan, store)


def test_inputs_are_keyed_by_target_handle():
    resolver = _resolver(
        make_graph(
            [("a", "constant"), ("b", "constant"), ("c", "inputs")],
            [("a", "c", "default", "left"), ("b", "c", "default", "right")],
        ),
        {"a": "x", "b": "y"},
    )

    assert resolver.resolve("c") == {"left": "x", "right": "y"}


def test_last_edge_wins_on_shared_port():
    resolver = _resolver(
        make_graph(
            [("a", "constant"), ("b", "constant"), ("c", "inputs")],
            [("a", "c"), ("b", "c")],
        ),
        {"a": "first", "b": "second"},
    )

    assert resolver.resolve("c") == {"default": "second"}


def test_declared_port_follows_alias_chain():
    resolver = _resolver(
        make_graph([("a", "constant"), ("b", "uppercase")], [("a", "b", "text-out", "text-in")]),
        {"a": "hello"},
    )

    inputs = resolver.resolve("b", input_ports=("text",))

    assert inputs["text"] == "hello"
    assert inputs["text-in"] == "hello"


def test_declared_port_falls_back_to_default_handle():
    resolver = _resolver(
        make_graph([("a", "constant"), ("b", "uppercase")], [("a", "b")]),
        {"a": "hello"},
    )

    assert resolver.resolve("b", input_ports=("text",))["text"] == "hello"


def test_unconnected_declared_port_gets_empty_default():
    resolver = _resolver(make_graph([("b", "uppercase")]), {})

    assert resolver.resolve("b", input_ports=("text", "system")) == {"text": "", "system": ""}
    assert resolver.resolve("b", ("text",), {"text": "fallback"}) == {"text": "fallback"}


def test_multi_port_results_route_by_source_handle():
    resolver = _resolver(
        make_graph(
            [("a", "constant"), ("b", "inputs")],
            [("a", "b", "image", "image-in"), ("a", "b", "caption", "text-in")],
        ),
        {"a": PortOutputs(image="data:image/jpeg;base64,AAAA", caption="a cat")},
    )

    inputs = resolver.resolve("b", input_ports=("image", "text"))

    assert inputs["image"] == "data:image/jpeg;base64,AAAA"
    assert inputs["text"] == "a cat"


def test_store_falls_back_to_default_port():
    store = NodeOutputStore()
    store.set_result("a", "value")
    store.set_result("b", PortOutputs(first=1, second=2))

    assert store.get_output("a", "text-out") == "value"
    assert store.get_output("b") == 1
    assert store.get_output("b", "second") == 2
    assert store.get_output("missing", default=None) is None
    with pytest.raises(KeyError):
        store.get_output("missing")


def test_first_present_skips_none():
    assert first_present({"a": None, "b": 0}, ("a", "b")) == 0
    assert first_present({}, ("a",), default="x") == "x"


def test_empty_multi_port_result_resolves_to_empty_string():
    resolver = _resolver(make_graph([("a", "constant"), ("b", "inputs")], [("a", "b")]), {"a": PortOutputs()})

    assert resolver.resolve("b") == {"default": ""}
