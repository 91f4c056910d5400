"""Agent invocation.

The agent is an external launcher (``agr`` by default) called as::

    <command> <agent-name> [flags...] <absolute-prompt-path>

with the loop's worktree as working directory. There are three ways to
use it:

- :func:`exec_agent` replaces the agl process with the agent (terminal
  action, never returns)
- :func:`run_agent_once` runs it to completion and waits (commit drafting)
- :func:`format_manual_commands` prints the command for the user to run

Usage:
    >>> inv = AgentInvocation("agr", ["claude", "--model", "opus"])
    >>> inv.argv(Path("/tmp/prompt.md"))
    ['agr', 'claude', '--model', 'opus', '/tmp/prompt.md']
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NoReturn, Optional, Sequence

from .errors import AgentLoopError, UsageError
from .subprocess_helper import check_command_available, run_subprocess

logger = logging.getLogger(__name__)

# Agents listed in the manual run hint
MANUAL_AGENTS = ("claude", "codex")


class AgentError(AgentLoopError):
    """The agent could not be started or failed."""

    pass


@dataclass(frozen=True)
class AgentInvocation:
    """Launcher command plus the agent name and its flags."""

    command: str
    agent_args: List[str] = field(default_factory=list)

    @property
    def agent(self) -> str:
        return self.agent_args[0]

    def argv(self, prompt: Path) -> List[str]:
        return [self.command, *self.agent_args, str(prompt)]


def parse_agent_args(tokens: Optional[Sequence[str]]) -> List[str]:
    """Normalize the trailing ``<agent> [flags...]`` tokens.

    A leading ``--`` separator is dropped. The first remaining token is the
    agent name and must not look like a flag.

    Raises:
        UsageError: If the agent name starts with ``-``
    """
    args = list(tokens or [])
    if args and args[0] == "--":
        args = args[1:]
    if args and args[0].startswith("-"):
        raise UsageError(
            f"Unknown option or missing agent before flags: {args[0]}"
        )
    return args


def build_invocation(command: str, tokens: Optional[Sequence[str]]) -> Optional[AgentInvocation]:
    """AgentInvocation for the given tokens, or None when no agent was named."""
    args = parse_agent_args(tokens)
    if not args:
        return None
    return AgentInvocation(command=command, agent_args=args)


def _require_launcher(command: str) -> None:
    if not check_command_available(command):
        raise AgentError(
            f"Agent launcher not found: {command}\n"
            "Install it or set [agent] command in agl.toml."
        )


def exec_agent(invocation: AgentInvocation, prompt: Path, cwd: Path) -> NoReturn:
    """Replace this process with the agent running in cwd (POSIX exec)."""
    _require_launcher(invocation.command)
    argv = invocation.argv(prompt)
    logger.debug("Exec agent: %s (cwd=%s)", " ".join(argv), cwd)
    sys.stdout.flush()
    sys.stderr.flush()
    os.chdir(cwd)
    os.execvp(argv[0], argv)


def run_agent_once(invocation: AgentInvocation, prompt: Path, cwd: Path) -> None:
    """Run the agent to completion in cwd.

    The agent's stdout is forwarded to stderr so that agl's own stdout stays
    reserved for results.

    Raises:
        AgentError: If the launcher is missing or the agent exits non-zero
    """
    _require_launcher(invocation.command)
    argv = invocation.argv(prompt)
    logger.debug("Running agent: %s (cwd=%s)", " ".join(argv), cwd)
    try:
        result = run_subprocess(argv, cwd=cwd, capture_output=False, stdout=sys.stderr)
    except RuntimeError as e:
        raise AgentError(str(e)) from e
    if result.failed:
        raise AgentError(
            f"Agent '{invocation.agent}' exited with status {result.returncode}"
        )


def format_manual_commands(
    command: str, prompt_rel: str, prompt_abs: Path, worktree: Path
) -> str:
    """Instructions for running the prompt by hand.

    Examples:
        >>> print(format_manual_commands(
        ...     "agr", "work/agent-loop/x/prompts/worker.md",
        ...     Path("/r/work/agent-loop/x/prompts/worker.md"), Path("/wt")))
        Prompt: work/agent-loop/x/prompts/worker.md
        Run:
          (cd "/wt" && agr claude "/r/work/agent-loop/x/prompts/worker.md")
          (cd "/wt" && agr codex  "/r/work/agent-loop/x/prompts/worker.md")
    """
    width = max(len(a) for a in MANUAL_AGENTS)
    lines = [f"Prompt: {prompt_rel}", "Run:"]
    for agent in MANUAL_AGENTS:
        lines.append(
            f'  (cd "{worktree}" && {command} {agent.ljust(width)} "{prompt_abs}")'
        )
    return "\n".join(lines)
