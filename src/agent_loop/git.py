"""Thin wrappers over the git CLI.

Each helper runs one git command through :func:`run_subprocess` with an
explicit working directory. Failures surface as :class:`GitError` carrying
git's stderr, except where a helper answers a yes/no question (branch exists,
tree clean, ancestry) and the exit code is the answer.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .errors import GitError, PreconditionError
from .subprocess_helper import SubprocessResult, run_subprocess

logger = logging.getLogger(__name__)


def run_git(
    cwd: Path, args: List[str], check: bool = True, capture_output: bool = True
) -> SubprocessResult:
    """Run ``git <args>`` in cwd.

    Raises:
        GitError: If git is missing, or check=True and git exits non-zero
    """
    try:
        result = run_subprocess(
            ["git", *args], cwd=cwd, check=False, capture_output=capture_output
        )
    except RuntimeError as e:
        raise GitError(str(e)) from e
    if check and result.failed:
        raise GitError(f"git {' '.join(args)} failed", stderr=result.stderr)
    return result


def _abs_git_path(base: Path, value: str) -> Path:
    p = Path(value.strip())
    if not p.is_absolute():
        p = base / p
    return p


# -------------------------
# Repository discovery
# -------------------------


def repo_root(cwd: Path) -> Path:
    """Return the physical top-level directory of the repo containing cwd."""
    result = run_git(cwd, ["rev-parse", "--show-toplevel"], check=False)
    if result.failed or not result.stdout.strip():
        raise PreconditionError("Not in a git repository")
    return Path(result.stdout.strip()).resolve()


def git_dir(cwd: Path) -> Path:
    result = run_git(cwd, ["rev-parse", "--git-dir"])
    return _abs_git_path(cwd, result.stdout).resolve()


def git_common_dir(cwd: Path) -> Path:
    """Return the resolved shared git directory for the checkout at cwd."""
    result = run_git(cwd, ["rev-parse", "--git-common-dir"])
    common = _abs_git_path(cwd, result.stdout)
    if not common.is_dir():
        raise GitError(f"Invalid common git dir: {common}")
    return common.resolve()


def require_primary_worktree(cwd: Path, command: str) -> None:
    """Refuse to run from a linked worktree.

    Running lifecycle commands from inside a loop's own worktree would let an
    agent modify the tool state that governs it.
    """
    inside = run_git(cwd, ["rev-parse", "--is-inside-work-tree"], check=False)
    if inside.failed:
        raise PreconditionError("Not in a git repository")
    if git_dir(cwd) != git_common_dir(cwd):
        raise PreconditionError(
            f"{command} must run from the primary worktree, not a linked worktree."
        )


def is_ignored(root: Path, rel_path: str) -> bool:
    result = run_git(root, ["check-ignore", "-q", "--", rel_path], check=False)
    return result.success


# -------------------------
# Branches
# -------------------------


def branch_exists(root: Path, branch: str) -> bool:
    result = run_git(
        root, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
    )
    return result.success


def create_branch(root: Path, branch: str, start: str = "HEAD") -> None:
    run_git(root, ["branch", branch, start])


def delete_branch(root: Path, branch: str) -> None:
    run_git(root, ["branch", "-D", branch])


def current_branch(path: Path) -> str:
    result = run_git(path, ["rev-parse", "--abbrev-ref", "HEAD"])
    return result.stdout.strip()


# -------------------------
# Worktrees
# -------------------------


def worktree_add(root: Path, path: Path, branch: str) -> None:
    run_git(root, ["worktree", "add", str(path), branch])


def worktree_remove(root: Path, path: Path, force: bool = False) -> None:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(path))
    run_git(root, args)


def worktree_prune(root: Path) -> None:
    run_git(root, ["worktree", "prune"], check=False)


# -------------------------
# Status / commits
# -------------------------


def status_porcelain(path: Path) -> str:
    return run_git(path, ["status", "--porcelain"]).stdout


def is_clean(path: Path) -> bool:
    return not status_porcelain(path).strip()


def add_all(path: Path) -> None:
    run_git(path, ["add", "-A"])


def commit(path: Path, message: str) -> None:
    run_git(path, ["commit", "-m", message])


def short_head(path: Path, length: int = 12) -> str:
    result = run_git(path, ["rev-parse", f"--short={length}", "HEAD"])
    return result.stdout.strip()


def commit_exists(path: Path, rev: str) -> bool:
    result = run_git(
        path, ["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"], check=False
    )
    return result.success


def is_ancestor(path: Path, ancestor: str, descendant: str = "HEAD") -> bool:
    """True when ancestor is reachable from descendant.

    Raises:
        GitError: If git cannot answer (e.g. an unknown revision)
    """
    result = run_git(
        path, ["merge-base", "--is-ancestor", ancestor, descendant], check=False
    )
    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    raise GitError(f"Cannot check ancestry of {ancestor}", stderr=result.stderr)


# -------------------------
# Merge
# -------------------------


def merge_squash(root: Path, branch: str) -> bool:
    """Stage a squash merge of branch. Returns False on conflicts."""
    result = run_git(root, ["merge", "--squash", branch], check=False)
    if result.failed:
        logger.debug("Squash merge failed: %s", result.stderr.strip())
    return result.success


def staged_diff(root: Path) -> str:
    return run_git(root, ["diff", "--staged"]).stdout


def commit_with_editor(root: Path, message_file: Optional[Path] = None) -> bool:
    """Run ``git commit`` attached to the terminal so the editor can open."""
    args = ["commit"]
    if message_file is not None:
        args += ["-e", "-F", str(message_file)]
    result = run_git(root, args, check=False, capture_output=False)
    return result.success
