"""Loop directory layout, discovery and context snapshots.

Each loop owns ``<repo>/work/agent-loop/<timestamp>-<slug>/``:

    .agl         metadata record
    .agl.lock    advisory lock taken by mutating commands
    prompts/     generated prompts
    output/      agent reports
    context/     snapshots of the plan and extra context files

The directory always lives in the primary checkout, never in the worktree,
and can outlive the worktree as an audit trail. Locking uses ``fcntl.flock``,
so agl runs on POSIX systems only.
"""

from __future__ import annotations

import fcntl
import logging
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import PreconditionError, UsageError
from .metadata import (
    BRANCH,
    FEATURE_SLUG,
    MAIN_ROOT,
    METADATA_FILENAME,
    WORKTREE,
    WORKTREE_BASE,
    WORKTREE_MODE,
    LoopMetadata,
    MetadataError,
)
from .path_utils import loop_root, validate_loop_dir

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".agl.lock"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"
DATE_FORMAT = "%Y-%m-%d"
NONE = "None"

SLUG_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


@dataclass(frozen=True)
class LoopPaths:
    """Well-known locations inside one loop directory."""

    loop_dir: Path

    @property
    def name(self) -> str:
        return self.loop_dir.name

    @property
    def meta_file(self) -> Path:
        return self.loop_dir / METADATA_FILENAME

    @property
    def lock_file(self) -> Path:
        return self.loop_dir / LOCK_FILENAME

    @property
    def prompts_dir(self) -> Path:
        return self.loop_dir / "prompts"

    @property
    def output_dir(self) -> Path:
        return self.loop_dir / "output"

    @property
    def context_dir(self) -> Path:
        return self.loop_dir / "context"

    def ensure_dirs(self) -> None:
        for d in (self.prompts_dir, self.output_dir, self.context_dir):
            d.mkdir(parents=True, exist_ok=True)

    def load_metadata(self) -> LoopMetadata:
        return LoopMetadata.load(self.meta_file)


def validate_slug(slug: str) -> str:
    """Require a lowercase, hyphen-separated feature slug.

    Examples:
        >>> validate_slug("add-auth-middleware")
        'add-auth-middleware'
    """
    if not slug:
        raise UsageError(
            "Feature slug is required. Usage: agl init <feature-slug> --plan <path>"
        )
    if not SLUG_RE.fullmatch(slug):
        raise UsageError(
            f"Invalid feature slug '{slug}'. Use lowercase alphanumeric with "
            "hyphens (e.g. add-auth-middleware)."
        )
    return slug


def new_loop_name(slug: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{now.strftime(TIMESTAMP_FORMAT)}-{slug}"


# -------------------------
# Locking
# -------------------------


@contextmanager
def loop_lock(paths: LoopPaths) -> Iterator[None]:
    """Hold an exclusive advisory lock on the loop for the enclosed block.

    The lock is non-blocking: a second agl process working on the same loop
    fails fast instead of queueing behind the first. The descriptor is not
    inherited across exec, so handing control to the agent releases it.
    """
    with paths.lock_file.open("a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise PreconditionError(
                f"Another agl command is operating on {paths.loop_dir.name}. "
                "Wait for it to finish and retry."
            ) from e
        logger.debug("Acquired loop lock %s", paths.lock_file)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


# -------------------------
# Discovery
# -------------------------


def _candidate_dirs(main_root: Path) -> List[Path]:
    base = loop_root(main_root)
    if not base.is_dir():
        return []
    return sorted((d for d in base.iterdir() if d.is_dir()), reverse=True)


def _has_lifecycle_keys(meta: LoopMetadata) -> bool:
    try:
        if not (meta.optional(BRANCH) and meta.optional(MAIN_ROOT)):
            return False
        worktree = meta.optional(WORKTREE)
        if not worktree:
            return False
        if worktree.startswith("/"):
            return meta.optional(WORKTREE_MODE) == "external" and bool(
                meta.optional(WORKTREE_BASE)
            )
    except MetadataError:
        return False
    return True


def _worktree_exists(meta: LoopMetadata, main_root: Path) -> bool:
    worktree = meta.optional(WORKTREE)
    if worktree.startswith("/"):
        return Path(worktree).is_dir()
    return (main_root / worktree).is_dir()


def find_latest_loop(main_root: Path, require_worktree: bool) -> Path:
    """Most recent loop directory with usable metadata.

    Args:
        main_root: Physical repository root
        require_worktree: Only consider loops whose worktree still exists
            (work/commit/enhance/review/fix). merge and drop pass False so
            they can find loops whose worktree is already gone.

    Raises:
        PreconditionError: If no loop qualifies
    """
    for candidate in _candidate_dirs(main_root):
        meta_file = candidate / METADATA_FILENAME
        if not meta_file.is_file():
            continue
        meta = LoopMetadata.load(meta_file)
        if not _has_lifecycle_keys(meta):
            continue
        if require_worktree and not _worktree_exists(meta, main_root):
            continue
        return candidate
    raise PreconditionError("No loop directory with .agl metadata found")


def find_loop_by_slug(main_root: Path, slug: str) -> Path:
    """Newest ``*-<slug>`` loop directory whose FEATURE_SLUG matches exactly."""
    for candidate in _candidate_dirs(main_root):
        if not candidate.name.endswith(f"-{slug}"):
            continue
        meta_file = candidate / METADATA_FILENAME
        if not meta_file.is_file():
            continue
        try:
            recorded = LoopMetadata.load(meta_file).optional(FEATURE_SLUG)
        except MetadataError:
            continue
        if recorded == slug:
            return candidate
    raise PreconditionError(f"No loop directory found for slug '{slug}'")


def resolve_loop_dir(
    dir_arg: Optional[str],
    main_root: Path,
    cwd: Path,
    slug: Optional[str] = None,
    require_worktree: bool = True,
) -> LoopPaths:
    """Turn ``--dir`` / slug / nothing into a validated loop directory."""
    if dir_arg:
        candidate = Path(dir_arg)
        if not candidate.is_absolute():
            candidate = cwd / candidate
        if not candidate.is_dir():
            raise UsageError(f"Loop directory not found: {dir_arg}")
    elif slug:
        candidate = find_loop_by_slug(main_root, slug)
    else:
        candidate = find_latest_loop(main_root, require_worktree=require_worktree)

    loop_dir = validate_loop_dir(candidate, main_root)
    paths = LoopPaths(loop_dir)
    if not paths.meta_file.is_file():
        raise PreconditionError(f"No .agl metadata found in {loop_dir}")
    return paths


# -------------------------
# Context snapshots
# -------------------------


def split_paths(value: str) -> List[str]:
    if value == NONE:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def resolve_input_file(raw: str, cwd: Path, what: str) -> Path:
    """Resolve a user-supplied file against the caller's cwd and require it readable."""
    path = Path(raw)
    if not path.is_absolute():
        path = cwd / path
    if not path.is_file():
        raise PreconditionError(f"{what} not found or not readable: {raw}")
    try:
        with path.open("rb"):
            pass
    except OSError as e:
        raise PreconditionError(f"{what} not found or not readable: {raw}") from e
    return path


def _dedupe_name(context_dir: Path, name: str) -> str:
    if not (context_dir / name).exists():
        return name
    if "." in name:
        stem, ext = name.rsplit(".", 1)
        ext = "." + ext
    else:
        stem, ext = name, ""
    counter = 2
    while (context_dir / f"{stem}-{counter}{ext}").exists():
        counter += 1
    return f"{stem}-{counter}{ext}"


def snapshot_context_files(value: str, cwd: Path, context_dir: Path) -> str:
    """Copy comma-separated context files into the loop's context/ directory.

    Returns the copies' absolute paths joined with ``", "``, or ``"None"``.
    Colliding basenames get ``-2``, ``-3``, ... suffixes.
    """
    raw_paths = split_paths(value)
    if not raw_paths:
        return NONE

    sources = [resolve_input_file(p, cwd, "Context file") for p in raw_paths]
    context_dir.mkdir(parents=True, exist_ok=True)

    copies = []
    for src in sources:
        dest = context_dir / _dedupe_name(context_dir, src.name)
        shutil.copyfile(src, dest)
        logger.debug("Snapshotted %s -> %s", src, dest)
        copies.append(str(dest))
    return ", ".join(copies)


def snapshot_plan(plan: Path, context_dir: Path) -> Path:
    """Copy the plan to ``context/plan.<ext>`` (or ``context/plan``)."""
    context_dir.mkdir(parents=True, exist_ok=True)
    suffix = plan.name.rsplit(".", 1)[1] if "." in plan.name else ""
    dest = context_dir / (f"plan.{suffix}" if suffix else "plan")
    shutil.copyfile(plan, dest)
    return dest


def collect_output_reports(output_dir: Path) -> str:
    """All markdown reports in output/, joined with ``", "``, or ``"None"``."""
    if not output_dir.is_dir():
        return NONE
    reports = sorted(str(p) for p in output_dir.glob("*.md") if p.is_file())
    return ", ".join(reports) if reports else NONE


def join_paths(*groups: str) -> str:
    """Join ``", "``-separated path groups, skipping ``"None"`` and empties."""
    parts = [g for g in groups if g and g != NONE]
    return ", ".join(parts) if parts else NONE
