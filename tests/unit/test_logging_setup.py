"""Tests for logging configuration."""

import logging
from pathlib import Path

import pytest

from society_billing.services.logging import get_log_level, setup_server_logging

pytestmark = pytest.mark.unit


class TestServerLogging:
    """Test server logging configuration."""

    def setup_method(self):
        """Save original handlers before each test."""
        self.root_logger = logging.getLogger()
        self.original_handlers = self.root_logger.handlers.copy()
        self.original_level = self.root_logger.level

    def teardown_method(self):
        """Restore original handlers after each test."""
        for handler in self.root_logger.handlers[:]:
            handler.close()
            self.root_logger.removeHandler(handler)
        for handler in self.original_handlers:
            self.root_logger.addHandler(handler)
        self.root_logger.setLevel(self.original_level)

    def test_creates_log_directory(self, tmp_path):
        log_file = tmp_path / "nested" / "server.log"
        assert not log_file.parent.exists()

        setup_server_logging(str(log_file))

        assert log_file.parent.exists()

    def test_creates_stdout_and_file_handlers(self, tmp_path):
        setup_server_logging(str(tmp_path / "server.log"))

        handlers = self.root_logger.handlers
        assert len(handlers) == 2
        assert any(isinstance(h, logging.FileHandler) for h in handlers)

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        setup_server_logging(str(tmp_path / "server.log"))
        setup_server_logging(str(tmp_path / "server.log"))

        assert len(self.root_logger.handlers) == 2

    def test_level_override(self, tmp_path):
        setup_server_logging(str(tmp_path / "server.log"), level_name="warning")

        assert self.root_logger.level == logging.WARNING

    def test_messages_reach_file(self, tmp_path):
        log_file = tmp_path / "server.log"
        setup_server_logging(str(log_file), level_name="INFO")

        logging.getLogger("society_billing.test").info("cycle finished")
        for handler in self.root_logger.handlers:
            handler.flush()

        content = Path(log_file).read_text()
        assert "society_billing.test - INFO - cycle finished" in content

    def test_default_file_from_settings(self):
        # LOG_FILE points into the test's temp dir (see conftest)
        setup_server_logging()

        file_handlers = [h for h in self.root_logger.handlers if isinstance(h, logging.FileHandler)]
        assert file_handlers[0].baseFilename.endswith("server.log")


class TestLogLevel:
    @pytest.mark.parametrize(
        "name, level",
        [("DEBUG", logging.DEBUG), ("info", logging.INFO), ("ERROR", logging.ERROR)],
    )
    def test_known_levels(self, name, level):
        assert get_log_level(name) == level

    def test_unknown_level_falls_back_to_info(self):
        assert get_log_level("VERBOSE") == logging.INFO
