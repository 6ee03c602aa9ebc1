import logging

from utils.logging_utils import OneLineFormatter, compact_json, summarize


def test_formatter_collapses_whitespace_and_truncates():
    formatter = OneLineFormatter(fmt="%(message)s", max_len=10)
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "line one\n   line two", None, None)

    assert formatter.format(record) == "line one l …(truncated)"


def test_summarize_shortens_data_urls():
    assert summarize("data:image/jpeg;base64," + "A" * 500) == "data:image/jpeg;base64,<500 chars>"


def test_summarize_clips_long_values():
    assert summarize("x" * 10, limit=4) == "xxxx…"
    assert summarize({"a": [1, 2]}) == '{"a":[1,2]}'
    assert summarize(b"abc") == "<3 bytes>"


def test_compact_json_falls_back_to_str_for_unserializable_keys():
    assert compact_json({(1, 2): "tuple key"}) == "{(1, 2): 'tuple key'}"
