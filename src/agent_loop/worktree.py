"""Git branch and worktree lifecycle for a loop.

This module creates the loop's isolated checkout, commits inside it,
squash-merges it back and tears it down. Callers pass paths that
:mod:`agent_loop.path_utils` has already validated. Nothing here derives a
destructive path from metadata on its own.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from . import git
from .errors import GitError, IntegrityError, PreconditionError
from .metadata import BRANCH, FEATURE_SLUG, LoopMetadata
from .path_utils import is_within, loop_root, physical_path

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "agl"
SHORT_HASH_LENGTH = 12
MIN_HASH_LENGTH = 7

_HASH_RE = re.compile(r"^[0-9a-f]+$")


class WorktreeError(PreconditionError):
    """Base exception for worktree operations."""

    pass


class WorktreeCreationError(WorktreeError):
    """Failed to create worktree."""

    pass


class WorktreeRemovalError(WorktreeError):
    """Failed to remove worktree."""

    pass


def loop_branch(slug: str) -> str:
    """Branch name for a loop.

    Examples:
        >>> loop_branch("add-auth")
        'agl/add-auth'
    """
    return f"{BRANCH_PREFIX}/{slug}"


# -------------------------
# Creation
# -------------------------


def create_loop_worktree(main_root: Path, branch: str, worktree_path: Path) -> None:
    """Create branch at HEAD and check it out at worktree_path.

    Raises:
        WorktreeCreationError: If either git step fails
    """
    if git.branch_exists(main_root, branch):
        raise WorktreeCreationError(f"Branch already exists: {branch}")

    worktree_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        git.create_branch(main_root, branch)
    except GitError as e:
        raise WorktreeCreationError(f"Failed to create branch {branch}: {e}") from e
    try:
        git.worktree_add(main_root, worktree_path, branch)
    except GitError as e:
        raise WorktreeCreationError(f"Failed to create worktree: {e}") from e
    logger.debug("Created worktree %s on %s", worktree_path, branch)


def cleanup_init_artifacts(
    main_root: Path,
    loop_dir: Path,
    branch: str,
    worktree_path: Optional[Path],
    external_leaf: Optional[Path],
) -> None:
    """Undo a partially completed ``init``.

    Every step is best-effort and logged; the caller re-raises the original
    failure afterwards. The external leaf is only removed when the worktree
    sits exactly at ``<leaf>/worktree``.
    """
    if worktree_path is not None:
        try:
            git.worktree_remove(main_root, worktree_path, force=True)
        except GitError as e:
            logger.debug("Cleanup: worktree remove failed: %s", e)
        git.worktree_prune(main_root)

        if external_leaf is not None:
            if worktree_path == external_leaf / "worktree" and external_leaf.is_dir():
                logger.debug("Cleanup: removing %s", external_leaf)
                shutil.rmtree(external_leaf, ignore_errors=True)
        elif worktree_path.is_dir() and is_within(
            physical_path(loop_root(main_root)), physical_path(worktree_path)
        ):
            shutil.rmtree(worktree_path, ignore_errors=True)

    if git.branch_exists(main_root, branch):
        try:
            git.delete_branch(main_root, branch)
        except GitError as e:
            logger.debug("Cleanup: branch delete failed: %s", e)

    if loop_dir.is_dir():
        logger.debug("Cleanup: removing %s", loop_dir)
        shutil.rmtree(loop_dir, ignore_errors=True)


# -------------------------
# Commit
# -------------------------


def require_loop_branch(meta: LoopMetadata) -> str:
    """BRANCH must be exactly ``agl/<FEATURE_SLUG>``."""
    slug = meta.require(FEATURE_SLUG)
    branch = meta.require(BRANCH)
    expected = loop_branch(slug)
    if branch != expected:
        raise IntegrityError(f"BRANCH '{branch}' does not match expected '{expected}'")
    return branch


def require_checked_out(main_root: Path, worktree_path: Path, branch: str) -> None:
    if not git.branch_exists(main_root, branch):
        raise PreconditionError(f"Branch {branch} does not exist")
    current = git.current_branch(worktree_path)
    if current != branch:
        raise PreconditionError(
            f"Worktree is on branch '{current}', expected '{branch}'"
        )


def validate_commit_hashes(hashes: List[str]) -> None:
    """Recorded hashes must be hex and at least MIN_HASH_LENGTH long."""
    for value in hashes:
        if len(value) < MIN_HASH_LENGTH or not _HASH_RE.fullmatch(value):
            raise IntegrityError(f"Invalid commit hash in COMMITS: {value!r}")


def next_commits(worktree_path: Path, recorded: List[str], new_hash: str) -> List[str]:
    """COMMITS after a new commit at HEAD.

    The new hash is appended while the last recorded hash is still an
    ancestor of HEAD. When it is not (amended or rebased away), the last
    entry is replaced in place.
    """
    if not recorded:
        return [new_hash]
    validate_commit_hashes(recorded)
    last = recorded[-1]
    if git.commit_exists(worktree_path, last) and git.is_ancestor(worktree_path, last):
        return [*recorded, new_hash]
    logger.debug("Commit %s no longer reachable, replacing it", last)
    return [*recorded[:-1], new_hash]


def commit_worktree(worktree_path: Path, message: str) -> str:
    """Stage everything and commit. Returns the new short hash.

    Raises:
        PreconditionError: If the worktree is clean
    """
    if git.is_clean(worktree_path):
        raise PreconditionError("Nothing to commit (working tree clean)")
    git.add_all(worktree_path)
    git.commit(worktree_path, message)
    return git.short_head(worktree_path, SHORT_HASH_LENGTH)


# -------------------------
# Merge
# -------------------------


def require_clean_trees(worktree_path: Optional[Path], main_root: Path) -> None:
    if worktree_path is not None and not git.is_clean(worktree_path):
        raise PreconditionError(
            "Worktree has uncommitted changes. Run 'agl commit' or discard changes first."
        )
    if not git.is_clean(main_root):
        raise PreconditionError(
            "Primary worktree has uncommitted changes. Commit or stash them first."
        )


def squash_merge(main_root: Path, branch: str) -> bool:
    """Stage the loop branch as one squashed change. False on conflicts."""
    if not git.branch_exists(main_root, branch):
        raise PreconditionError(f"Branch {branch} does not exist")
    return git.merge_squash(main_root, branch)


# -------------------------
# Removal
# -------------------------


def remove_loop_worktree(main_root: Path, worktree_path: Path, force: bool = False) -> None:
    """Remove a validated worktree and prune stale registrations.

    Raises:
        WorktreeRemovalError: If git refuses to remove it
    """
    try:
        git.worktree_remove(main_root, worktree_path, force=force)
    except GitError as e:
        raise WorktreeRemovalError(
            f"Failed to remove worktree at {worktree_path}: {e}"
        ) from e
    git.worktree_prune(main_root)


def remove_external_leaf(leaf: Optional[Path], worktree_value: str) -> None:
    """Remove ``<base>/<framework>/<repo>/<loop>`` once its worktree is gone.

    leaf must come from :func:`path_utils.expected_external_leaf`; the
    recorded WORKTREE has to equal ``<leaf>/worktree`` exactly.
    """
    if leaf is None:
        return
    if worktree_value != f"{leaf}/worktree":
        raise IntegrityError(f"Refusing to remove unexpected directory: {leaf}")
    if leaf.is_dir():
        logger.debug("Removing external loop directory %s", leaf)
        shutil.rmtree(leaf)


def delete_loop_branch(main_root: Path, branch: str) -> bool:
    """Delete branch if present. Returns whether it existed."""
    if not git.branch_exists(main_root, branch):
        return False
    git.delete_branch(main_root, branch)
    return True


def teardown(
    main_root: Path,
    branch: str,
    worktree_path: Optional[Path],
    leaf: Optional[Path],
    worktree_value: str,
    force: bool,
) -> Tuple[bool, bool]:
    """Remove worktree, external leaf and branch.

    Returns (worktree_removed, branch_deleted).
    """
    removed = False
    if worktree_path is not None:
        remove_loop_worktree(main_root, worktree_path, force=force)
        removed = True
    else:
        git.worktree_prune(main_root)
    remove_external_leaf(leaf, worktree_value)
    deleted = delete_loop_branch(main_root, branch)
    return removed, deleted
