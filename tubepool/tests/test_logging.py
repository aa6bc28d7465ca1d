"""Tests for structured logging."""

import json
import logging

import pytest

from shared.logging import JsonLinesFormatter, configure_logging, get_logger


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestStructuredLogger:
    """Tests for event rendering."""

    def test_renders_event_and_fields(self, caplog):
        """Events render as the name followed by key=value pairs."""
        log = get_logger("tubepool", "test")

        with caplog.at_level(logging.INFO, logger="tubepool.test"):
            log.info("tubepool.test.event", tab="home", page=2)

        record = caplog.records[-1]
        assert record.name == "tubepool.test"
        assert record.getMessage() == "tubepool.test.event tab=home page=2"
        assert record.event == "tubepool.test.event"
        assert record.fields == {"tab": "home", "page": 2}

    def test_quotes_values_with_spaces(self, caplog):
        log = get_logger("tubepool", "test")

        with caplog.at_level(logging.INFO, logger="tubepool.test"):
            log.info("tubepool.test.event", message="two words")

        assert "message='two words'" in caplog.records[-1].getMessage()

    def test_exception_adds_type_and_traceback(self, caplog):
        """exception() logs at ERROR with the exception attached."""
        log = get_logger("tubepool", "test")

        try:
            raise ValueError("bad value")
        except ValueError as e:
            with caplog.at_level(logging.ERROR, logger="tubepool.test"):
                log.exception(e, "tubepool.test.failed", {"request_id": "r1"})

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.fields["error_type"] == "ValueError"
        assert record.fields["request_id"] == "r1"
        assert record.exc_info is not None

    def test_disabled_level_is_skipped(self, caplog):
        log = get_logger("tubepool", "test")

        with caplog.at_level(logging.WARNING, logger="tubepool.test"):
            log.debug("tubepool.test.noise", x=1)

        assert not [r for r in caplog.records if r.name == "tubepool.test"]


class TestConfigureLogging:
    """Tests for handler installation."""

    def test_reconfigure_replaces_own_handlers(self, restore_root_logger):
        """Calling configure_logging twice does not duplicate handlers."""
        configure_logging("DEBUG")
        configure_logging("WARNING")

        ours = [h for h in restore_root_logger.handlers if getattr(h, "_tubepool", False)]
        assert len(ours) == 1
        assert restore_root_logger.level == logging.WARNING

    def test_writes_json_lines_file(self, restore_root_logger, tmp_path):
        """With a log file, events are appended as JSON objects."""
        log_file = tmp_path / "logs" / "tubepool.jsonl"
        configure_logging("INFO", str(log_file))

        get_logger("tubepool", "test").info("tubepool.test.written", tab="home")
        for handler in restore_root_logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
        assert entry["event"] == "tubepool.test.written"
        assert entry["tab"] == "home"
        assert entry["level"] == "INFO"

    def test_formatter_without_fields(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "plain message", None, None)

        entry = json.loads(JsonLinesFormatter().format(record))

        assert entry["event"] == "plain message"
