"""
Tests for tsocks.logging_setup module.
"""

import logging

import pytest

from tsocks.logging_setup import ColorFormatter, format_block, reset_logging, setup_logging


@pytest.fixture
def clean_logging():
    reset_logging()
    yield
    reset_logging()
    logging.getLogger("tsocks").propagate = True
    logging.getLogger("tsocks").setLevel(logging.NOTSET)


class TestSetupLogging:
    """Tests for logger configuration."""

    def test_file_handler(self, clean_logging, tmp_path):
        log_file = tmp_path / "logs" / "tsocks.log"

        logger = setup_logging(log_file=str(log_file), log_to_console=False)
        logging.getLogger("tsocks.proxy").debug("[PROXY] hello")
        for handler in logger.handlers:
            handler.flush()

        assert logger.name == "tsocks"
        assert "[PROXY] hello" in log_file.read_text()

    def test_second_call_returns_same_logger(self, clean_logging):
        first = setup_logging(log_to_console=True, log_level="WARNING")
        second = setup_logging(log_level="DEBUG")

        assert first is second
        assert len(first.handlers) == 1
        assert first.level == logging.WARNING

    def test_reset_detaches_handlers(self, clean_logging):
        logger = setup_logging(log_to_console=True)
        reset_logging()
        assert logger.handlers == []


class TestFormatting:
    """Tests for formatting helpers."""

    def test_color_formatter_restores_levelname(self):
        record = logging.LogRecord("tsocks", logging.ERROR, __file__, 1, "boom", None, None)
        text = ColorFormatter("%(levelname)s %(message)s").format(record)

        assert "\033[31m" in text
        assert record.levelname == "ERROR"

    def test_format_block(self):
        assert format_block("STATUS", ["a", "b"]) == "[STATUS]\n  a\n  b"
