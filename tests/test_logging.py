import json
import logging

import pytest

from docchat.core.config import Settings
from docchat.core.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield root
    # Only drop the plain stdout handler installed by configure_logging
    for handler in list(root.handlers):
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
    root.setLevel(level)


def test_json_formatter():
    record = logging.LogRecord("docchat.rag", logging.WARNING, __file__, 1, "cache %s", ("miss",), None)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "docchat.rag"
    assert payload["message"] == "cache miss"
    assert "timestamp" in payload


def test_configure_logging_installs_one_handler(restore_root_logger):
    configure_logging(Settings(_env_file=None, log_level="debug", log_format="json"))
    configure_logging(Settings(_env_file=None, log_level="debug", log_format="json"))

    root = restore_root_logger
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert root.level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_console_format(restore_root_logger):
    configure_logging(Settings(_env_file=None, log_format="console"))

    formatter = restore_root_logger.handlers[0].formatter
    assert not isinstance(formatter, JsonFormatter)
    assert restore_root_logger.level == logging.INFO
