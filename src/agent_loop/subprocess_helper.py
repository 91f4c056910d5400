"""Unified subprocess execution with proper error handling.

All git calls and the one-shot agent run go through :func:`run_subprocess`.
Commands are always passed as argv lists, never through a shell, so values
read from loop metadata cannot be interpreted as shell syntax.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SubprocessResult:
    """Result of a subprocess execution.

    Attributes:
        returncode: The exit code of the process (0 = success)
        stdout: Standard output (captured if capture_output=True)
        stderr: Standard error output (captured if capture_output=True)
        cmd_str: String representation of the command (for logging)
    """

    returncode: int
    stdout: str
    stderr: str
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        """True if the command exited with code 0."""
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        """True if the command exited with a non-zero code."""
        return self.returncode != 0


def _coerce_output_payload(raw: str | bytes | None) -> str:
    """Normalize subprocess output to text."""
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return str(raw)


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    check: bool = False,
    timeout: Optional[int] = None,
    capture_output: bool = True,
    stdout=None,
    env: Optional[dict] = None,
) -> SubprocessResult:
    """Run subprocess with unified error handling.

    Args:
        argv: Command and arguments as a list (e.g., ["git", "status"])
        cwd: Working directory for the command
        check: If True, raise RuntimeError on non-zero exit
        timeout: Maximum seconds to wait before giving up
        capture_output: If True, capture stdout and stderr. When False the
            child inherits the terminal (needed for editors and agents).
        stdout: Explicit stdout target when capture_output is False
            (e.g. ``sys.stderr`` or an open file)
        env: Environment variables to pass to the subprocess

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        RuntimeError: If the command times out, is not found, or check=True
            and it exits non-zero

    Examples:
        >>> result = run_subprocess(["git", "status", "--porcelain"])
        >>> if result.success:
        ...     print(result.stdout)
    """
    cmd_str = " ".join(argv)
    logger.debug("Running: %s (cwd=%s)", cmd_str, cwd)

    kwargs: dict = {"text": True}
    if capture_output:
        kwargs["capture_output"] = True
    elif stdout is not None:
        kwargs["stdout"] = stdout

    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = env

    try:
        cp = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as e:
        stderr = _coerce_output_payload(e.stderr)
        raise RuntimeError(
            f"Command timed out after {timeout}s: {cmd_str}\n"
            f"Partial output:\n{stderr[:500]}"
        ) from e
    except FileNotFoundError as e:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e

    result = SubprocessResult(
        returncode=cp.returncode,
        stdout=_coerce_output_payload(cp.stdout) if capture_output else "",
        stderr=_coerce_output_payload(cp.stderr) if capture_output else "",
        cmd_str=cmd_str,
    )

    if check and result.failed:
        raise RuntimeError(
            f"Command failed with exit code {result.returncode}: {cmd_str}\n"
            f"stderr: {result.stderr}"
        )

    return result


def check_command_available(cmd: str) -> bool:
    """Check if a command is available in PATH.

    Examples:
        >>> if check_command_available("git"):
        ...     print("Git is available")
    """
    return shutil.which(cmd) is not None
