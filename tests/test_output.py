"""Unit tests for output control module.

Covers quiet mode, verbose mode, the AGL_VERBOSITY fallback and error
routing to stderr.
"""

from __future__ import annotations

import pytest

from agent_loop.output import (
    OutputConfig,
    get_output_config,
    print_output,
    reset_output_config,
    set_output_config,
)

# -------------------------
# OutputConfig Tests
# -------------------------


def test_output_config_defaults():
    """Test OutputConfig default values."""
    assert OutputConfig().verbosity == "normal"


def test_get_output_config_default():
    assert get_output_config().verbosity == "normal"


def test_get_output_config_from_env(monkeypatch):
    monkeypatch.setenv("AGL_VERBOSITY", "quiet")
    assert get_output_config().verbosity == "quiet"


def test_get_output_config_ignores_bad_env(monkeypatch):
    monkeypatch.setenv("AGL_VERBOSITY", "loud")
    assert get_output_config().verbosity == "normal"


def test_set_and_reset_output_config(monkeypatch):
    monkeypatch.setenv("AGL_VERBOSITY", "quiet")
    set_output_config(OutputConfig(verbosity="verbose"))
    assert get_output_config().verbosity == "verbose"
    reset_output_config()
    assert get_output_config().verbosity == "quiet"


# -------------------------
# print_output Tests
# -------------------------


@pytest.mark.parametrize(
    "verbosity, printed",
    [
        ("quiet", {"quiet"}),
        ("normal", {"quiet", "normal"}),
        ("verbose", {"quiet", "normal", "verbose"}),
    ],
)
def test_print_output_levels(capsys, verbosity, printed):
    set_output_config(OutputConfig(verbosity=verbosity))
    for level in ("quiet", "normal", "verbose"):
        print_output(level, level=level)

    out = capsys.readouterr().out.split()
    assert set(out) == printed


def test_errors_always_go_to_stderr(capsys):
    set_output_config(OutputConfig(verbosity="quiet"))
    print_output("Error: boom", level="error")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == "Error: boom\n"


def test_print_output_custom_end(capsys):
    print_output("Continue? [y/N] ", end="")
    assert capsys.readouterr().out == "Continue? [y/N] "
