"""Tests for structured JSON logging."""

import json
import logging
import sys

from matrix_kernel.logging_config import JSONFormatter, configure_logging


def _make_record(msg="Applied suggestion", exc_info=None, **extra):
    record = logging.LogRecord(
        name="matrix_kernel.learning.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(_make_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "matrix_kernel.learning.engine"
        assert entry["message"] == "Applied suggestion"
        assert "timestamp" in entry
        assert "policy_version" not in entry

    def test_context_fields(self):
        record = _make_record(policy_version="1.1", suggestion_id="sugg_abc", unrelated="x")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["policy_version"] == "1.1"
        assert entry["suggestion_id"] == "sugg_abc"
        assert "unrelated" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("store unavailable")
        except RuntimeError:
            record = _make_record(exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: store unavailable" in entry["exception"]


class TestConfigureLogging:
    def teardown_method(self):
        logger = logging.getLogger("matrix_kernel")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)

    def test_level(self):
        logger = configure_logging("debug")
        assert logger.level == logging.DEBUG

    def test_no_duplicate_handlers(self):
        configure_logging()
        logger = configure_logging()
        json_handlers = [h for h in logger.handlers if isinstance(h.formatter, JSONFormatter)]
        assert len(json_handlers) == 1
