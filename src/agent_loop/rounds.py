"""Round and prompt versioning.

A loop keeps one integer ROUND. Reviewer and fixer artifacts for round 1 use
the base name, and later rounds carry an ``-r<N>`` suffix:

    prompts/reviewer.md      output/REVIEW-<slug>.md       (round 1)
    prompts/reviewer-r2.md   output/REVIEW-r2-<slug>.md    (round 2)
    prompts/fixer.md         output/FIX-<slug>.md          (round 1)
    prompts/fixer-r2.md      output/FIX-r2-<slug>.md       (round 2)

Worker passes scaffolded by ``work --plan`` are numbered separately
(``worker-r1.md``, ``worker-r2.md``, ...) on top of the ``worker.md``
written by ``init``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from .errors import PreconditionError

WORKER = "worker"
WORKER_NEXT = "worker-next"
ENHANCER = "enhancer"
REVIEWER = "reviewer"
FIXER = "fixer"
COMMIT_WRITER = "commit-writer"

_ROUND_SUFFIX_RE = re.compile(r"^(.+)-r([0-9]+)\.md$")
_NUMERIC_SUFFIX_RE = re.compile(r"^(.+)-([0-9]+)\.md$")
_MARKDOWN_RE = re.compile(r"^(.+)\.md$")
_WORKER_PASS_RE = re.compile(r"^worker-r([0-9]+)\.md$")


def _suffix(round_num: int) -> str:
    return "" if round_num <= 1 else f"-r{round_num}"


def prompt_name(stage: str, round_num: int = 1) -> str:
    """Prompt filename for a stage in a given round."""
    return f"{stage}{_suffix(round_num)}.md"


def worker_pass_prompt_name(index: int) -> str:
    return f"{WORKER}-r{index}.md"


def review_report_name(slug: str, round_num: int) -> str:
    if round_num <= 1:
        return f"REVIEW-{slug}.md"
    return f"REVIEW-r{round_num}-{slug}.md"


def fix_report_name(slug: str, round_num: int) -> str:
    if round_num <= 1:
        return f"FIX-{slug}.md"
    return f"FIX-r{round_num}-{slug}.md"


def handoff_report_name(slug: str) -> str:
    return f"HANDOFF-{slug}.md"


def enhance_report_name(slug: str) -> str:
    return f"ENHANCE-{slug}.md"


def commit_message_name(slug: str) -> str:
    return f"COMMIT_MESSAGE-{slug}.txt"


# -------------------------
# Latest-prompt resolution
# -------------------------


def prompt_sort_key(filename: str) -> str:
    """Deterministic tie-break key for prompts with equal mtimes.

    A base prompt counts as pass 1, so ``worker-r3.md`` outranks
    ``worker.md`` even when the filesystem reports identical timestamps.
    Numbers are zero-padded so that string comparison orders them.

    Examples:
        >>> prompt_sort_key("worker-r3.md")
        'worker-r000000003.md'
        >>> prompt_sort_key("worker.md")
        'worker-000000001.md'
    """
    m = _ROUND_SUFFIX_RE.match(filename)
    if m:
        return f"{m.group(1)}-r{int(m.group(2)):09d}.md"
    m = _NUMERIC_SUFFIX_RE.match(filename)
    if m:
        return f"{m.group(1)}-{int(m.group(2)):09d}.md"
    m = _MARKDOWN_RE.match(filename)
    if m:
        return f"{m.group(1)}-{1:09d}.md"
    return filename


def find_latest_prompt(prompts_dir: Path) -> Optional[Path]:
    """Return the most recently modified ``*.md`` prompt, or None.

    Modification times are compared at whole-second resolution. Ties are
    broken by :func:`prompt_sort_key`, then by filename.
    """
    if not prompts_dir.is_dir():
        return None

    best: Optional[Path] = None
    best_rank: tuple = ()
    for candidate in sorted(prompts_dir.glob("*.md")):
        if not candidate.is_file():
            continue
        rank = (
            int(candidate.stat().st_mtime),
            prompt_sort_key(candidate.name),
            candidate.name,
        )
        if best is None or rank > best_rank:
            best, best_rank = candidate, rank
    return best


def next_worker_pass(prompts_dir: Path) -> int:
    """Index for the next ``worker-r<N>.md``; ``worker.md`` from init is pass 0."""
    highest = 0
    if prompts_dir.is_dir():
        for candidate in prompts_dir.iterdir():
            m = _WORKER_PASS_RE.match(candidate.name)
            if m and candidate.is_file():
                highest = max(highest, int(m.group(1)))
    return highest + 1


# -------------------------
# Round preconditions
# -------------------------


def required_prior_fix_report(output_dir: Path, slug: str, round_num: int) -> Path:
    """Fix report a re-review (round > 1) must build on.

    Raises:
        PreconditionError: If the previous round's fix report is missing
    """
    prev_round = round_num - 1
    name = fix_report_name(slug, prev_round)
    path = output_dir / name
    if not path.is_file():
        raise PreconditionError(
            f"Fix report {name} not found in {output_dir}. "
            f"Run the fixer for round {prev_round} first."
        )
    return path


def current_review_report(output_dir: Path, slug: str, round_num: int) -> Path:
    """Review report the fixer for this round consumes.

    Raises:
        PreconditionError: If no review exists for the current round
    """
    path = output_dir / review_report_name(slug, round_num)
    if not path.is_file():
        raise PreconditionError(
            f"No review findings found in {output_dir}. Run the reviewer first."
        )
    return path


def previous_review_reports(output_dir: Path, slug: str, round_num: int) -> List[Path]:
    reports = []
    for r in range(1, round_num):
        path = output_dir / review_report_name(slug, r)
        if path.is_file():
            reports.append(path)
    return reports


def commit_stage_label(
    last_stage: str, round_num: int, worker_pass: Optional[int] = None
) -> str:
    """Stage label used in the mechanical commit message.

    The fixer has already advanced ROUND when its work is committed, so the
    label refers to ``round_num - 1``.
    """
    if last_stage == FIXER:
        fix_round = round_num - 1
        return FIXER if fix_round <= 1 else f"{FIXER}-r{fix_round}"
    if last_stage == WORKER and worker_pass is not None:
        return f"{WORKER}-r{worker_pass}"
    return last_stage
