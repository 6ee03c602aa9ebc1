import pytest

from flow_engine import (
    BaseNodeExecutor,
    DuplicateExecutorError,
    NodeExecutorRegistry,
    UnknownNodeTypeError,
)


class EchoExecutor(BaseNodeExecutor):
    node_type = 'echo'

    async def execute(self, ctx):
        return ctx.inputs


class PlainExecutor:
    """Not derived from BaseNodeExecutor; only has execute()."""

    def execute(self, ctx):
        return "plain"


def test_lookup_returns_registered_executor():
    executor = EchoExecutor()
    registry = NodeExecutorRegistry({'echo': executor})

    assert registry.lookup('echo') is executor
    assert 'echo' in registry
    assert len(registry) == 1


def test_duplicate_registration_is_rejected():
    registry = NodeExecutorRegistry()
    registry.register('echo', EchoExecutor())

    with pytest.raises(DuplicateExecutorError):
        registry.register('echo', EchoExecutor())


def test_unknown_type_lookup_raises():
    registry = NodeExecutorRegistry()

    with pytest.raises(UnknownNodeTypeError) as exc_info:
        registry.lookup('foo')

    assert exc_info.value.node_type == 'foo'


def test_any_object_with_execute_registers():
    registry = NodeExecutorRegistry()
    registry.register('plain', PlainExecutor())

    assert registry.node_types() == ['plain']


@pytest.mark.parametrize("executor", [object(), "execute"])
def test_objects_without_execute_are_rejected(executor):
    with pytest.raises(TypeError):
        NodeExecutorRegistry().register('broken', executor)


def test_empty_node_type_is_rejected():
    with pytest.raises(ValueError):
        NodeExecutorRegistry().register('', EchoExecutor())


def test_register_all_uses_declared_node_types():
    registry = NodeExecutorRegistry()
    registry.register_all([EchoExecutor()])

    assert list(registry) == ['echo']


def test_base_parse_config_returns_plain_dict():
    assert EchoExecutor().parse_config({'a': 1}) == {'a': 1}


def test_builtin_registry_lists_node_types(builtin_registry):
    assert builtin_registry.node_types() == sorted([
        'imageDescriptionOutputNode',
        'imageInputNode',
        'imageLlmPromptNode',
        'llmPromptNode',
        'markdownOutputNode',
        'staticTextNode',
        'textCombinerNode',
        'textInputNode',
        'textOutputNode',
    ])
