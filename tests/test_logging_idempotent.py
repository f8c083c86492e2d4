import logging
import os
import sys

from cronwarden.utils import configure_logging


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("CW_LOG_LEVEL", "INFO")
    monkeypatch.setenv("CW_LOG_FILE", str(log_file))

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("cronwarden.monitor")
        configure_logging("cronwarden.monitor")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]

        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(
            str(log_file)
        )
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)


def test_log_level_overrides(monkeypatch):
    monkeypatch.setenv("CW_LOG_LEVELS", "cronwarden.dispatcher=DEBUG, broken-entry")
    logger = logging.getLogger("cronwarden.dispatcher")
    original = logger.level
    try:
        configure_logging("cronwarden")
        assert logger.level == logging.DEBUG
    finally:
        logger.setLevel(original)
