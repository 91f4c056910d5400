"""Tests for logging setup."""

from __future__ import annotations

import logging

import pytest

from agent_loop.logging_config import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.mark.parametrize(
    "verbose, quiet, level",
    [
        (False, False, logging.WARNING),
        (True, False, logging.DEBUG),
        (False, True, logging.ERROR),
        (True, True, logging.ERROR),
    ],
)
def test_console_level(verbose, quiet, level):
    root = setup_logging(verbose=verbose, quiet=quiet)
    assert root.level == level
    assert len(root.handlers) == 1
    assert root.handlers[0].level == level


def test_log_file_always_gets_debug(tmp_path):
    log_file = tmp_path / "logs" / "agl.log"
    root = setup_logging(log_file=log_file)

    logging.getLogger("agent_loop.test").debug("Validated worktree %s", "/wt")
    for handler in root.handlers:
        handler.flush()

    assert root.level == logging.DEBUG
    assert "Validated worktree /wt" in log_file.read_text()


def test_repeated_setup_replaces_handlers():
    setup_logging()
    root = setup_logging(verbose=True)
    assert len(root.handlers) == 1
