"""Unit tests for logging infrastructure."""
import logging
import pytest
from pbt.infrastructure.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


def test_setup_logging_creates_log_file(tmp_path):
    """setup_logging creates the parent directory and the file."""
    log_file = tmp_path / "nested" / "logs" / "pbt.log"

    logger = setup_logging(log_file, debug=False)

    assert isinstance(logger, logging.Logger)
    assert log_file.exists()
    assert "Logging initialized" in log_file.read_text()


def test_setup_logging_debug_mode(tmp_path):
    setup_logging(tmp_path / "pbt.log", debug=True)
    assert logging.getLogger().getEffectiveLevel() == logging.DEBUG


def test_setup_logging_normal_mode(tmp_path):
    setup_logging(tmp_path / "pbt.log", debug=False)
    assert logging.getLogger().getEffectiveLevel() == logging.INFO


def test_setup_logging_format(tmp_path):
    log_file = tmp_path / "pbt.log"
    setup_logging(log_file)

    logging.getLogger("pbt.test").warning("DISCOVERY: something odd")
    for handler in logging.getLogger().handlers:
        handler.flush()

    line = log_file.read_text().strip().splitlines()[-1]
    assert " - WARNING - [MainThread] DISCOVERY: something odd" in line


def test_client_loggers_quiet_unless_debug(tmp_path):
    setup_logging(tmp_path / "pbt.log", debug=False)
    assert logging.getLogger("httpx").getEffectiveLevel() == logging.WARNING

    setup_logging(tmp_path / "pbt.log", debug=True)
    assert logging.getLogger("httpx").getEffectiveLevel() == logging.DEBUG
