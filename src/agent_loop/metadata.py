"""Loop metadata record (the ``.agl`` file).

The record is a UTF-8 text file with one ``KEY=value`` pair per line. It is
created once at ``init`` and afterwards mutated by whole-file rewrite through
:func:`atomic_write_text`. Nothing is cached between commands: every
invocation loads the file fresh.

Corruption is reported where it is noticed. A duplicate key fails when that
key is read, and a malformed ROUND fails when the round is needed.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .atomic_file import atomic_write_text
from .errors import IntegrityError

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".agl"

KEY_PATTERN = re.compile(r"^[A-Z][A-Z_]*$")

FEATURE_SLUG = "FEATURE_SLUG"
PLAN_PATH = "PLAN_PATH"
DATE = "DATE"
ROUND = "ROUND"
BRANCH = "BRANCH"
WORKTREE = "WORKTREE"
MAIN_ROOT = "MAIN_ROOT"
LAST_STAGE = "LAST_STAGE"
WORKER_PASS = "WORKER_PASS"
COMMITS = "COMMITS"
WORKTREE_MODE = "WORKTREE_MODE"
WORKTREE_BASE = "WORKTREE_BASE"

COMMITS_SEPARATOR = ", "


class MetadataError(IntegrityError):
    """The metadata record is corrupt or unusable."""

    pass


class MissingKeyError(MetadataError):
    """A required key is absent (or empty) in the metadata record."""

    def __init__(self, key: str, path: Path) -> None:
        super().__init__(f"Required key {key} missing from {path}")
        self.key = key
        self.path = path


def _parse_lines(text: str) -> List[Tuple[Optional[str], str]]:
    entries: List[Tuple[Optional[str], str]] = []
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    for raw in lines:
        raw = raw.rstrip("\r")
        if "=" not in raw:
            entries.append((None, raw))
            continue
        key, value = raw.split("=", 1)
        entries.append((key, value))
    return entries


def _check_value(key: str, value: str) -> None:
    if not KEY_PATTERN.fullmatch(key):
        raise MetadataError(f"Invalid metadata key: {key!r}")
    if "\n" in value or "\r" in value:
        raise MetadataError(f"Multiline values are not supported for {key}")


class LoopMetadata:
    """In-memory view of one ``.agl`` file.

    Lines are kept in file order. Unknown keys and free-form lines survive a
    load/save cycle untouched.
    """

    def __init__(self, path: Path, entries: List[Tuple[Optional[str], str]]):
        self.path = path
        self._entries = entries

    @classmethod
    def load(cls, path: Path) -> "LoopMetadata":
        if not path.is_file():
            raise MetadataError(f"No .agl metadata found in {path.parent}")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise MetadataError(f"Cannot read {path}: {e}") from e
        return cls(path, _parse_lines(text))

    @classmethod
    def create(cls, path: Path, items: Iterable[Tuple[str, str]]) -> "LoopMetadata":
        """Write a brand-new record atomically and return it."""
        entries: List[Tuple[Optional[str], str]] = []
        seen = set()
        for key, value in items:
            _check_value(key, value)
            if key in seen:
                raise MetadataError(f"Duplicate metadata key: {key}")
            seen.add(key)
            entries.append((key, value))
        meta = cls(path, entries)
        meta.save()
        return meta

    # -------------------------
    # Reads
    # -------------------------

    def _values(self, key: str) -> List[str]:
        return [value for k, value in self._entries if k == key]

    def optional(self, key: str) -> str:
        """Return the value for key, or "" when absent."""
        values = self._values(key)
        if len(values) > 1:
            raise MetadataError(f"Duplicate key {key} in {self.path}")
        return values[0] if values else ""

    def require(self, key: str) -> str:
        value = self.optional(key)
        if not value:
            raise MissingKeyError(key, self.path)
        return value

    @property
    def round(self) -> int:
        raw = self.require(ROUND)
        if not (raw.isascii() and raw.isdigit()):
            raise MetadataError(f"Invalid ROUND in .agl: {raw}")
        return int(raw)

    @property
    def worker_pass(self) -> Optional[int]:
        raw = self.optional(WORKER_PASS)
        if not raw:
            return None
        if not (raw.isascii() and raw.isdigit()):
            raise MetadataError(f"Invalid WORKER_PASS in .agl: {raw}")
        return int(raw)

    @property
    def commits(self) -> List[str]:
        raw = self.optional(COMMITS)
        return [c.strip() for c in raw.split(",") if c.strip()]

    @property
    def is_external(self) -> bool:
        return self.optional(WORKTREE_MODE) == "external"

    # -------------------------
    # Writes
    # -------------------------

    def set(self, key: str, value: str) -> None:
        """Replace the single line for key, or append one."""
        _check_value(key, value)
        indexes = [i for i, (k, _) in enumerate(self._entries) if k == key]
        if len(indexes) > 1:
            raise MetadataError(f"Duplicate key {key} in {self.path}")
        if indexes:
            self._entries[indexes[0]] = (key, value)
        else:
            self._entries.append((key, value))

    def set_commits(self, hashes: List[str]) -> None:
        self.set(COMMITS, COMMITS_SEPARATOR.join(hashes))

    def render(self) -> str:
        lines = []
        for key, value in self._entries:
            lines.append(value if key is None else f"{key}={value}")
        return "\n".join(lines) + "\n"

    def save(self) -> None:
        logger.debug("Writing loop metadata: %s", self.path)
        atomic_write_text(self.path, self.render())

    def update(self, key: str, value: str) -> None:
        """Set a single key and persist the record."""
        self.set(key, value)
        self.save()
