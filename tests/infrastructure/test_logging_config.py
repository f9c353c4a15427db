"""Tests for structured logging setup."""

import json
import logging
import sys

import pytest

from mcu_batch.infrastructure.logging_config import StructuredFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="mcu_batch.test", level=logging.WARNING, pathname=__file__, lineno=10,
        msg="Verification mismatch for encounter %s", args=("MCU-1",), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:

    def test_formats_json_line(self):
        payload = json.loads(StructuredFormatter().format(_record()))

        assert payload["level"] == "WARNING"
        assert payload["logger"] == "mcu_batch.test"
        assert payload["message"] == "Verification mismatch for encounter MCU-1"
        assert payload["timestamp"].endswith("Z")

    def test_includes_batch_context(self):
        payload = json.loads(StructuredFormatter().format(
            _record(batch_id="b-1", encounter_id="MCU-1", actor="dr.sari", extra_fields={"attempt": 2})
        ))

        assert payload["batch_id"] == "b-1"
        assert payload["encounter_id"] == "MCU-1"
        assert payload["actor"] == "dr.sari"
        assert payload["attempt"] == 2

    def test_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        payload = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: boom" in payload["exception"]


class TestSetupLogging:

    def test_json_handler(self, restore_root_logger):
        setup_logging(use_json=True, log_level="debug")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("duckdb").level == logging.WARNING

    def test_text_handler_and_unknown_level(self, restore_root_logger):
        setup_logging(use_json=False, log_level="chatty")

        assert restore_root_logger.level == logging.INFO
        assert not isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)
