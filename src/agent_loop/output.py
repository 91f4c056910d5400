"""Output control for agl commands.

Supports quiet mode (results only), normal mode and verbose mode. Prompt
paths, run commands and commit hashes are "quiet" level so scripts still
see them under ``-q``.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Any, Optional

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")


# -------------------------
# Dataclasses
# -------------------------


@dataclass
class OutputConfig:
    """Output configuration for controlling verbosity.

    Attributes:
        verbosity: Output level - "quiet", "normal", or "verbose"
    """

    verbosity: str = "normal"  # quiet|normal|verbose


# -------------------------
# Global state
# -------------------------

# set by the CLI
_output_config: Optional[OutputConfig] = None


# -------------------------
# Core functions
# -------------------------


def get_output_config() -> OutputConfig:
    """Current output configuration.

    Falls back to ``$AGL_VERBOSITY`` (then "normal") when the CLI has not
    set one.
    """
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("AGL_VERBOSITY", "normal")
    if verbosity not in VERBOSITY_LEVELS:
        verbosity = "normal"
    return OutputConfig(verbosity=verbosity)


def set_output_config(config: OutputConfig) -> None:
    global _output_config
    _output_config = config


def reset_output_config() -> None:
    global _output_config
    _output_config = None


def print_output(message: str, level: str = "normal", file: Any = None, end: str = "\n") -> None:
    """Print output respecting the current verbosity level.

    - "error" messages: always printed, to stderr by default
    - "quiet" messages: printed in every mode
    - "normal" messages: suppressed in quiet mode
    - "verbose" messages: only printed in verbose mode

    Args:
        message: The message to print
        level: Message level - "error", "quiet", "normal", or "verbose"
        file: File object to write to (default: stdout, stderr for errors)
        end: String to append after message (default: newline)
    """
    config = get_output_config()

    if level == "error":
        should_print = True
        if file is None:
            file = sys.stderr
    elif level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if should_print:
        if file is None:
            file = sys.stdout
        print(message, file=file, end=end)
