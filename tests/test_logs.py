import json
import logging

import pytest
from rich.logging import RichHandler

from couchstream.logs import JsonFormatter, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("couchstream.sink", logging.WARNING, __file__, 1, "retrying %s", ("o1",), None)
    record.source_key = "orders"

    out = json.loads(JsonFormatter().format(record))

    assert out["level"] == "warning"
    assert out["logger"] == "couchstream.sink"
    assert out["message"] == "retrying o1"
    assert out["source_key"] == "orders"
    assert "ts" in out


def test_configure_logging_formats() -> None:
    configure_logging("debug", "compact")
    root = logging.getLogger()
    assert isinstance(root.handlers[0], RichHandler)
    assert root.level == logging.DEBUG

    configure_logging("warning", "json")
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert root.level == logging.WARNING

    with pytest.raises(ValueError):
        configure_logging("info", "xml")
