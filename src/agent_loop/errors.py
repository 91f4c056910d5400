"""Exception taxonomy for agl commands.

Every failure that should stop a command derives from AgentLoopError. The CLI
catches it, prints ``Error: <message>`` to stderr and exits 1.

- UsageError: bad flags or arguments, raised before any side effect
- PreconditionError: the repository or loop is not in the required state;
  the message names the next step
- IntegrityError: metadata or a derived path failed a safety check; never
  auto-corrected
- GitError: a git subprocess failed
- InitError: ``init`` failed part-way, after best-effort cleanup
"""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base exception for agl failures."""

    pass


class UsageError(AgentLoopError):
    """Invalid command-line usage."""

    pass


class PreconditionError(AgentLoopError):
    """Repository or loop state does not allow the requested transition."""

    pass


class IntegrityError(AgentLoopError):
    """Metadata or a derived path failed validation."""

    pass


class GitError(AgentLoopError):
    """A git command failed."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        detail = self.stderr.strip()
        if detail:
            return f"{base}: {detail}"
        return base


class InitError(AgentLoopError):
    """Loop creation failed after side effects had started."""

    pass
