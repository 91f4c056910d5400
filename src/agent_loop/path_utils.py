"""Path validation and security utilities.

Loop metadata is plain text on disk and must never be trusted blindly. Every
path derived from it is checked here before it is used in one of these
operations:

- a destructive ``git worktree remove`` or ``git -C <path>`` call
- a recursive directory delete
- changing into a directory and handing control to the agent

Two worktree layouts exist:

- external: ``<base>/<framework>/<repo>/<timestamp>-<slug>/worktree``,
  outside the repository, under an operator-configured base
- internal: ``work/agent-loop/<timestamp>-<slug>/worktree``, relative to the
  repository root (the fallback when no base is configured)

Each check reconstructs the one path that is allowed and requires
byte-for-byte equality with it. Prefix checks are never enough on their
own, and nothing is sanitized into shape: any deviation raises
:class:`IntegrityError`.

Common attack patterns prevented:
- ``work/agent-loop/x/../../../etc``
- an absolute WORKTREE outside the declared WORKTREE_BASE
- a base directory later replaced by a symlink to somewhere else
- a path that passes the string checks but is a checkout of another repo
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from . import git
from .errors import GitError, IntegrityError
from .metadata import MAIN_ROOT, WORKTREE, WORKTREE_BASE, WORKTREE_MODE, LoopMetadata

logger = logging.getLogger(__name__)

LOOP_ROOT_REL = "work/agent-loop"
WORKTREE_LEAF = "worktree"
EXTERNAL_MODE = "external"


def physical_path(path: Union[str, Path]) -> Path:
    """Absolute path with symlinks resolved (``pwd -P`` semantics)."""
    return Path(path).resolve(strict=False)


def is_within(root: Path, candidate: Path) -> bool:
    """True when candidate is root itself or lies below it (no resolution)."""
    try:
        candidate.relative_to(root)
    except ValueError:
        return False
    return True


def loop_root(main_root: Path) -> Path:
    return main_root / LOOP_ROOT_REL


def validate_loop_dir(candidate: Union[str, Path], main_root: Path) -> Path:
    """Validate that a loop directory lies under ``<root>/work/agent-loop/``.

    Args:
        candidate: Absolute path of the loop directory (must exist)
        main_root: Physical repository root (trusted boundary)

    Returns:
        The resolved loop directory

    Raises:
        IntegrityError: If the resolved path escapes the loop root
    """
    resolved = physical_path(candidate)
    boundary = physical_path(loop_root(main_root))
    if resolved == boundary or not is_within(boundary, resolved):
        raise IntegrityError(f"Loop directory must be under {boundary}")
    return resolved


def loop_dir_rel(loop_dir: Path, main_root: Path) -> str:
    """Return the loop directory relative to the repo root, POSIX style."""
    return physical_path(loop_dir).relative_to(physical_path(main_root)).as_posix()


def require_main_root(meta: LoopMetadata, repo_root: Path) -> Path:
    """Check that the record was created in the repository we are running in."""
    recorded = meta.require(MAIN_ROOT)
    if not Path(recorded).is_dir():
        raise IntegrityError(f"Invalid .agl MAIN_ROOT: {recorded}")
    if physical_path(recorded) != physical_path(repo_root):
        raise IntegrityError(".agl MAIN_ROOT does not match current repo root")
    return physical_path(repo_root)


def derive_framework_name(main_root: Path, worktree_base: str) -> str:
    """Name of the directory level between the base and the repo name.

    When the base sits inside (or is) the repo's parent directory, that
    parent is a generic container such as ``~/dev`` and the level is called
    ``etc``. Otherwise it is the parent's basename (e.g. ``python``).
    """
    parent = os.path.dirname(str(main_root))
    if worktree_base == parent or worktree_base.startswith(parent + "/"):
        return "etc"
    return os.path.basename(parent)


def expected_external_worktree(
    worktree_base: str, main_root: Path, loop_dir_name: str
) -> str:
    framework = derive_framework_name(main_root, worktree_base)
    return (
        f"{worktree_base}/{framework}/{main_root.name}/{loop_dir_name}/{WORKTREE_LEAF}"
    )


def expected_internal_worktree(loop_rel: str) -> str:
    return f"{loop_rel}/{WORKTREE_LEAF}"


def _declared_mode(meta: LoopMetadata) -> tuple[str, str]:
    mode = meta.optional(WORKTREE_MODE)
    base = meta.optional(WORKTREE_BASE)
    if mode and mode != EXTERNAL_MODE:
        raise IntegrityError(f"Unknown WORKTREE_MODE in .agl: {mode}")
    if bool(mode) != bool(base):
        raise IntegrityError(
            "WORKTREE_MODE and WORKTREE_BASE must be present together"
        )
    return mode, base


def validate_worktree_value(
    meta: LoopMetadata, worktree_value: str, loop_rel: str, main_root: Path
) -> None:
    """Prove that a WORKTREE value is the one this loop is allowed to use.

    WORKTREE_MODE and WORKTREE_BASE are read from the record only, never
    from the CLI, the environment or the config file. This function has no
    side effects and no hidden state, so repeated calls agree.

    Args:
        meta: The loop's metadata record
        worktree_value: Candidate WORKTREE value (usually meta's own)
        loop_rel: Loop directory relative to main_root
            (``work/agent-loop/<timestamp>-<slug>``)
        main_root: Physical repository root

    Raises:
        IntegrityError: On any mismatch
    """
    mode, base = _declared_mode(meta)

    if worktree_value.startswith("/"):
        if mode != EXTERNAL_MODE:
            raise IntegrityError(
                "Absolute WORKTREE requires WORKTREE_MODE=external and WORKTREE_BASE"
            )
        if not worktree_value.startswith(base + "/"):
            raise IntegrityError("WORKTREE is not under WORKTREE_BASE")
        if not worktree_value.endswith("/" + WORKTREE_LEAF):
            raise IntegrityError(f"WORKTREE must end with /{WORKTREE_LEAF}")

        expected = expected_external_worktree(
            base, main_root, os.path.basename(loop_rel)
        )
        if worktree_value != expected:
            raise IntegrityError(
                f"WORKTREE '{worktree_value}' does not match expected '{expected}'"
            )

        if os.path.isdir(worktree_value) and os.path.isdir(base):
            if not is_within(physical_path(base), physical_path(worktree_value)):
                raise IntegrityError("WORKTREE escapes WORKTREE_BASE (symlink detected)")
        return

    if mode == EXTERNAL_MODE:
        raise IntegrityError("WORKTREE_MODE=external requires absolute WORKTREE")
    if ".." in worktree_value:
        raise IntegrityError(f"Unsafe WORKTREE path (contains ..): {worktree_value}")
    if not worktree_value.startswith(LOOP_ROOT_REL + "/"):
        raise IntegrityError(f"Unsafe WORKTREE path (wrong prefix): {worktree_value}")
    expected = expected_internal_worktree(loop_rel)
    if worktree_value != expected:
        raise IntegrityError(
            f"WORKTREE '{worktree_value}' does not match expected '{expected}'"
        )


def worktree_abs(worktree_value: str, main_root: Path) -> Path:
    """Absolute (unresolved) location of a validated WORKTREE value."""
    if worktree_value.startswith("/"):
        return Path(worktree_value)
    return main_root / worktree_value


def require_inside_loop_root(worktree_path: Path, main_root: Path) -> None:
    boundary = physical_path(loop_root(main_root))
    resolved = physical_path(worktree_path)
    if resolved == boundary or not is_within(boundary, resolved):
        raise IntegrityError(f"Unsafe WORKTREE path (escapes {LOOP_ROOT_REL}/)")


def require_repo_membership(worktree_path: Path, main_root: Path) -> None:
    """Require the worktree to share the primary repository's git directory.

    Catches a path that satisfies every string check but is in fact a
    symlink or bind mount onto an unrelated repository.
    """
    repo_common = git.git_common_dir(main_root)
    try:
        wt_common = git.git_common_dir(worktree_path)
    except GitError as e:
        raise IntegrityError(f"Invalid worktree: {worktree_path}") from e
    if wt_common != repo_common:
        raise IntegrityError(
            "Worktree does not belong to current repo (git common-dir mismatch)"
        )


def expected_worktree_location(
    meta: LoopMetadata, loop_dir: Path, main_root: Path
) -> Path:
    """Physical location this loop's worktree must resolve to.

    The leaf itself is appended after resolution so a ``worktree`` symlink
    pointing at another loop's checkout never matches.
    """
    mode, base = _declared_mode(meta)
    loop_phys = physical_path(loop_dir)
    if mode == EXTERNAL_MODE:
        leaf = Path(expected_external_worktree(base, main_root, loop_phys.name)).parent
        return physical_path(leaf) / WORKTREE_LEAF
    return loop_phys / WORKTREE_LEAF


def require_own_worktree(
    resolved: Path, meta: LoopMetadata, loop_dir: Path, main_root: Path
) -> None:
    expected = expected_worktree_location(meta, loop_dir, main_root)
    if resolved != expected:
        raise IntegrityError(
            f"Worktree resolves to {resolved}, expected {expected}"
        )


def resolve_safe_worktree(
    meta: LoopMetadata, loop_dir: Path, main_root: Path, must_exist: bool = True
) -> Optional[Path]:
    """Run the full validation chain and return the usable worktree path.

    Returns the physical worktree path. When must_exist is False and the
    directory is gone, returns None instead of raising.

    Raises:
        IntegrityError: Any safety check failed, or the worktree is missing
            and must_exist is True
    """
    value = meta.require(WORKTREE)
    rel = loop_dir_rel(loop_dir, main_root)
    validate_worktree_value(meta, value, rel, main_root)

    raw = worktree_abs(value, main_root)
    if not raw.is_dir():
        if must_exist:
            raise IntegrityError(f"Worktree directory not found: {raw}")
        return None

    resolved = physical_path(raw)
    if not meta.is_external:
        require_inside_loop_root(resolved, main_root)
    require_own_worktree(resolved, meta, loop_dir, main_root)
    require_repo_membership(resolved, main_root)
    logger.debug("Validated worktree %s for %s", resolved, rel)
    return resolved


def expected_external_leaf(
    meta: LoopMetadata, loop_dir: Path, main_root: Path
) -> Optional[Path]:
    """The only external directory this loop may ever remove recursively.

    Returns None for internal-mode loops. The path comes from the same
    derivation used in validation, never from WORKTREE alone.
    """
    mode, base = _declared_mode(meta)
    if mode != EXTERNAL_MODE:
        return None
    expected = expected_external_worktree(base, main_root, physical_path(loop_dir).name)
    if meta.require(WORKTREE) != expected:
        raise IntegrityError(
            f"WORKTREE '{meta.require(WORKTREE)}' does not match expected '{expected}'"
        )
    return Path(expected).parent
