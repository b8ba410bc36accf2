"""
Logging Config Tests
====================
Handler setup for console and dated log files.
"""
import logging

import pytest

from healer.utils.logging_config import ColoredFormatter, setup_logging


@pytest.fixture
def restore_root_handlers():
    root = logging.getLogger()
    saved, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved:
        root.addHandler(handler)
    root.setLevel(level)


def test_file_handler_writes_dated_log(tmp_path, restore_root_handlers):
    setup_logging(logging.DEBUG, log_dir=str(tmp_path))

    assert len(restore_root_handlers.handlers) == 2
    logs = list(tmp_path.glob("healer_*.log"))
    assert len(logs) == 1
    logging.getLogger("healer.test").warning("checkpoint %s restored", "ckpt-1")
    for handler in restore_root_handlers.handlers:
        handler.flush()
    assert "checkpoint ckpt-1 restored" in logs[0].read_text(encoding="utf-8")


def test_console_only(restore_root_handlers):
    setup_logging(log_dir=None)
    assert len(restore_root_handlers.handlers) == 1
    assert logging.getLogger("healer").level == logging.INFO


def test_colored_formatter_wraps_level_colour():
    record = logging.LogRecord("healer", logging.ERROR, __file__, 1, "boom", None, None)
    output = ColoredFormatter().format(record)
    assert output.startswith(ColoredFormatter.red)
    assert output.endswith(ColoredFormatter.reset)
    assert "boom" in output
