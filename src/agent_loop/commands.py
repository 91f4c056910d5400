"""One function per ``agl`` subcommand.

Each ``cmd_*`` takes the parsed argparse namespace and returns an exit code.
Failures are raised as :class:`AgentLoopError` subclasses and reported by
:func:`agent_loop.cli.main`. A few outcomes that come with recovery
instructions (merge conflicts, an aborted squash commit, a declined drop)
print those instructions and return 1 directly.

Every command that touches a worktree runs the full path validation itself
before using the path, and every command that mutates a loop holds the
loop's advisory lock while it does so.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from . import agents, git, rounds
from .config import Config, load_config, resolve_worktree_base
from .errors import GitError, InitError, IntegrityError, PreconditionError, UsageError
from .loops import (
    DATE_FORMAT,
    NONE,
    LoopPaths,
    collect_output_reports,
    join_paths,
    loop_lock,
    new_loop_name,
    resolve_input_file,
    resolve_loop_dir,
    snapshot_context_files,
    snapshot_plan,
    split_paths,
    validate_slug,
)
from .metadata import (
    BRANCH,
    COMMITS,
    DATE,
    FEATURE_SLUG,
    LAST_STAGE,
    MAIN_ROOT,
    PLAN_PATH,
    ROUND,
    WORKER_PASS,
    WORKTREE,
    WORKTREE_BASE,
    WORKTREE_MODE,
    LoopMetadata,
)
from .output import print_output
from .path_utils import (
    EXTERNAL_MODE,
    LOOP_ROOT_REL,
    expected_external_leaf,
    expected_external_worktree,
    expected_internal_worktree,
    is_within,
    loop_dir_rel,
    loop_root,
    physical_path,
    require_main_root,
    resolve_safe_worktree,
)
from .templates import (
    drop_none_paragraph,
    drop_section,
    render_template,
    replace_on_marked_lines,
    slug_to_name,
    write_prompt,
)
from .worktree import (
    cleanup_init_artifacts,
    commit_worktree,
    create_loop_worktree,
    loop_branch,
    next_commits,
    require_checked_out,
    require_clean_trees,
    require_loop_branch,
    squash_merge,
    teardown,
    validate_commit_hashes,
)

logger = logging.getLogger(__name__)

INIT_TASK = "Implement the feature according to the plan."
WORK_TASK = "Implement the plan."
REVIEW_CHECKLIST_HEADING = "### Review Checklist"
FIX_REPORT_MARKER = "produce a fix report at"

LIFECYCLE_KEYS = (FEATURE_SLUG, LAST_STAGE, ROUND, BRANCH, WORKTREE, MAIN_ROOT)


@dataclass
class LoopContext:
    """A resolved, validated loop as seen from the primary checkout."""

    cfg: Config
    cwd: Path
    root: Path
    paths: LoopPaths


# -------------------------
# Shared helpers
# -------------------------


def _config(args: argparse.Namespace) -> Config:
    cfg = getattr(args, "config", None)
    return cfg if cfg is not None else load_config()


def _cwd() -> Path:
    return Path(os.getcwd()).resolve()


def _open_loop(
    args: argparse.Namespace, command: str, require_worktree: bool = True
) -> LoopContext:
    cwd = _cwd()
    git.require_primary_worktree(cwd, f"agl {command}")
    root = git.repo_root(cwd)
    paths = resolve_loop_dir(
        getattr(args, "dir", None),
        root,
        cwd,
        slug=getattr(args, "slug", None),
        require_worktree=require_worktree,
    )
    logger.debug("Resolved loop %s", paths.loop_dir)
    return LoopContext(cfg=_config(args), cwd=cwd, root=root, paths=paths)


def _warn_uncommitted(root: Path) -> None:
    try:
        clean = git.is_clean(root)
    except GitError as e:
        logger.debug("Cannot check primary worktree status: %s", e)
        return
    if not clean:
        logger.warning("Uncommitted changes detected. Run 'agl commit' first.")


def _require_lifecycle_keys(meta: LoopMetadata) -> None:
    if not all(meta.optional(key) for key in LIFECYCLE_KEYS):
        raise PreconditionError("Not a worktree-mode loop (required keys missing)")


def _validated_worktree(ctx: LoopContext, meta: LoopMetadata) -> Path:
    require_main_root(meta, ctx.root)
    worktree = resolve_safe_worktree(meta, ctx.paths.loop_dir, ctx.root)
    if worktree is None:
        raise IntegrityError(f"Worktree directory not found for {ctx.paths.name}")
    return worktree


def _base_values(ctx: LoopContext, meta: LoopMetadata) -> Dict[str, str]:
    slug = meta.require(FEATURE_SLUG)
    return {
        "DATE": meta.require(DATE),
        "FEATURE_SLUG": slug,
        "FEATURE_NAME": slug_to_name(slug),
        "PLAN_PATH": str(ctx.root / meta.require(PLAN_PATH)),
        "OUTPUT_DIR": str(ctx.paths.output_dir),
    }


def _commit_hashes(cli_value: Optional[str], meta: LoopMetadata) -> str:
    if cli_value:
        return cli_value
    return meta.optional(COMMITS) or NONE


def _display_path(path: Path, root: Path) -> str:
    if is_within(root, path):
        return path.relative_to(root).as_posix()
    return str(path)


def _print_run_commands(cfg: Config, prompt: Path, root: Path, worktree: Path) -> None:
    print_output("", level="quiet")
    print_output(
        agents.format_manual_commands(
            cfg.agent.command, _display_path(prompt, root), prompt, worktree
        ),
        level="quiet",
    )


def _hand_off(
    ctx: LoopContext,
    tokens: Optional[list],
    prompt: Path,
    worktree: Path,
) -> int:
    """Exec the agent on prompt, or print how to run it by hand."""
    invocation = agents.build_invocation(ctx.cfg.agent.command, tokens)
    if invocation is None:
        _print_run_commands(ctx.cfg, prompt, ctx.root, worktree)
        return 0
    agents.exec_agent(invocation, prompt, worktree)
    return 0  # pragma: no cover


# -------------------------
# init
# -------------------------


def _resolve_external_base(raw: str, main_root: Path) -> Path:
    if raw.startswith("~/"):
        raw = str(Path.home() / raw[2:])
    if not raw.startswith("/"):
        raise UsageError(f"worktree base must be absolute (after ~ expansion): {raw}")
    try:
        Path(raw).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PreconditionError(f"Failed to create worktree base directory: {raw}") from e
    base = physical_path(raw)
    if is_within(main_root, base):
        raise UsageError("worktree base must be outside the repository")
    return base


def cmd_init(args: argparse.Namespace) -> int:
    slug = validate_slug(args.slug or "")
    if not args.plan:
        raise UsageError("--plan is required. Usage: agl init <feature-slug> --plan <path>")

    cwd = _cwd()
    git.require_primary_worktree(cwd, "agl init")
    main_root = git.repo_root(cwd)
    if not git.is_ignored(main_root, LOOP_ROOT_REL):
        raise PreconditionError(
            f"{LOOP_ROOT_REL} must be in .gitignore or .git/info/exclude before proceeding."
        )

    plan_abs = resolve_input_file(args.plan, cwd, "Plan file")
    context_arg = args.context or NONE
    for ctx_path in split_paths(context_arg):
        resolve_input_file(ctx_path, cwd, "Context file")

    branch = loop_branch(slug)
    if git.branch_exists(main_root, branch):
        raise PreconditionError(f"Branch {branch} already exists")

    cfg = _config(args)
    raw_base = resolve_worktree_base(args.worktree_base, cfg)
    base = _resolve_external_base(raw_base, main_root) if raw_base else None

    now = datetime.now()
    paths = LoopPaths(loop_root(main_root) / new_loop_name(slug, now))
    if paths.loop_dir.exists():
        raise PreconditionError(f"Loop directory already exists: {paths.loop_dir}")
    paths.ensure_dirs()
    loop_rel = loop_dir_rel(paths.loop_dir, main_root)

    if base is not None:
        worktree_value = expected_external_worktree(str(base), main_root, paths.name)
        worktree_path = Path(worktree_value)
        external_leaf: Optional[Path] = worktree_path.parent
    else:
        worktree_value = expected_internal_worktree(loop_rel)
        worktree_path = main_root / worktree_value
        external_leaf = None

    try:
        create_loop_worktree(main_root, branch, worktree_path)

        plan_copy = snapshot_plan(plan_abs, paths.context_dir)
        context_copies = snapshot_context_files(context_arg, cwd, paths.context_dir)

        items = [
            (FEATURE_SLUG, slug),
            (PLAN_PATH, plan_copy.relative_to(main_root).as_posix()),
            (DATE, now.strftime(DATE_FORMAT)),
            (ROUND, "1"),
            (BRANCH, branch),
            (WORKTREE, worktree_value),
            (MAIN_ROOT, str(main_root)),
            (LAST_STAGE, rounds.WORKER),
        ]
        if base is not None:
            items += [(WORKTREE_MODE, EXTERNAL_MODE), (WORKTREE_BASE, str(base))]
        LoopMetadata.create(paths.meta_file, items)

        content = render_template(
            rounds.WORKER,
            {
                "DATE": now.strftime(DATE_FORMAT),
                "FEATURE_SLUG": slug,
                "FEATURE_NAME": slug_to_name(slug),
                "PLAN_PATH": str(plan_copy),
                "HANDOFF_PATHS": NONE,
                "OTHER_CONTEXT": context_copies,
                "TASK_DESCRIPTION": args.task or INIT_TASK,
                "OUTPUT_DIR": str(paths.output_dir),
            },
            cfg.template_dir,
        )
        prompt = write_prompt(paths.prompts_dir / rounds.prompt_name(rounds.WORKER), content)
    except Exception as e:
        logger.debug("init failed, cleaning up %s", paths.loop_dir)
        cleanup_init_artifacts(
            main_root, paths.loop_dir, branch, worktree_path, external_leaf
        )
        raise InitError(str(e)) from e

    print_output(f"Created loop: {loop_rel}", level="quiet")
    _print_run_commands(cfg, prompt, main_root, worktree_path)
    return 0


# -------------------------
# work
# -------------------------


def cmd_work(args: argparse.Namespace) -> int:
    if not args.plan:
        if args.task is not None:
            raise UsageError("--task requires --plan")
        if args.context is not None:
            raise UsageError("--context requires --plan")
    tokens = agents.parse_agent_args(args.agent)
    if not args.plan and not tokens:
        raise UsageError("Agent name is required. Usage: agl work <agent> [flags...]")

    ctx = _open_loop(args, "work")
    plan_abs = resolve_input_file(args.plan, ctx.cwd, "Plan file") if args.plan else None

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        worktree = _validated_worktree(ctx, meta)
        _warn_uncommitted(ctx.root)

        if plan_abs is None:
            prompt = rounds.find_latest_prompt(ctx.paths.prompts_dir)
            if prompt is None:
                raise PreconditionError(f"No prompt found in {ctx.paths.prompts_dir}")
            return _hand_off(ctx, tokens, prompt, worktree)

        ctx.paths.ensure_dirs()
        values = _base_values(ctx, meta)
        slug = values["FEATURE_SLUG"]
        pass_index = rounds.next_worker_pass(ctx.paths.prompts_dir)

        plan_copy = snapshot_context_files(str(plan_abs), ctx.cwd, ctx.paths.context_dir)
        extra = snapshot_context_files(args.context or NONE, ctx.cwd, ctx.paths.context_dir)

        handoff = ctx.paths.output_dir / rounds.handoff_report_name(slug)
        template = rounds.WORKER_NEXT if handoff.is_file() else rounds.WORKER
        values.update(
            {
                "OTHER_CONTEXT": join_paths(values["PLAN_PATH"], extra),
                "PLAN_PATH": plan_copy,
                "HANDOFF_PATHS": str(handoff) if handoff.is_file() else NONE,
                "TASK_DESCRIPTION": args.task or WORK_TASK,
            }
        )
        content = render_template(template, values, ctx.cfg.template_dir)
        prompt = write_prompt(
            ctx.paths.prompts_dir / rounds.worker_pass_prompt_name(pass_index), content
        )

        meta.set(WORKER_PASS, str(pass_index))
        meta.set(LAST_STAGE, rounds.WORKER)
        meta.save()
        logger.debug("Scaffolded worker pass %d", pass_index)

        return _hand_off(ctx, tokens, prompt, worktree)


# -------------------------
# enhance / review / fix
# -------------------------


def cmd_enhance(args: argparse.Namespace) -> int:
    tokens = agents.parse_agent_args(args.agent)
    ctx = _open_loop(args, "enhance")

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        worktree = _validated_worktree(ctx, meta)
        _warn_uncommitted(ctx.root)

        values = _base_values(ctx, meta)
        handoff = ctx.paths.output_dir / rounds.handoff_report_name(values["FEATURE_SLUG"])
        instructions = args.instructions or NONE
        values.update(
            {
                "HANDOFF_PATH": str(handoff) if handoff.is_file() else NONE,
                "OTHER_CONTEXT": snapshot_context_files(
                    args.context or NONE, ctx.cwd, ctx.paths.context_dir
                ),
                "COMMIT_HASHES": _commit_hashes(args.commits, meta),
                "ADDITIONAL_INSTRUCTIONS": instructions,
            }
        )
        content = render_template(rounds.ENHANCER, values, ctx.cfg.template_dir)
        if instructions == NONE:
            content = drop_none_paragraph(content)
        prompt = write_prompt(
            ctx.paths.prompts_dir / rounds.prompt_name(rounds.ENHANCER), content
        )

        meta.update(LAST_STAGE, rounds.ENHANCER)
        return _hand_off(ctx, tokens, prompt, worktree)


def cmd_review(args: argparse.Namespace) -> int:
    tokens = agents.parse_agent_args(args.agent)
    ctx = _open_loop(args, "review")

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        round_num = meta.round
        worktree = _validated_worktree(ctx, meta)
        _warn_uncommitted(ctx.root)

        values = _base_values(ctx, meta)
        slug = values["FEATURE_SLUG"]
        output_dir = ctx.paths.output_dir
        other_context = snapshot_context_files(
            args.context or NONE, ctx.cwd, ctx.paths.context_dir
        )

        if round_num > 1:
            fix_report = rounds.required_prior_fix_report(output_dir, slug, round_num)
            handoffs = str(fix_report)
            previous = rounds.previous_review_reports(output_dir, slug, round_num)
            other_context = join_paths(other_context, ", ".join(str(p) for p in previous))
        else:
            reports = [
                output_dir / rounds.handoff_report_name(slug),
                output_dir / rounds.enhance_report_name(slug),
            ]
            handoffs = join_paths(*(str(p) for p in reports if p.is_file()))

        checklist = args.checklist or NONE
        values.update(
            {
                "HANDOFF_PATHS": handoffs,
                "FILE_PATHS": args.files or NONE,
                "OTHER_CONTEXT": other_context,
                "COMMIT_HASHES": _commit_hashes(args.commits, meta),
                "REVIEW_CHECKLIST": checklist,
                "REVIEW_OUTPUT_PATH": str(
                    output_dir / rounds.review_report_name(slug, round_num)
                ),
            }
        )
        content = render_template(rounds.REVIEWER, values, ctx.cfg.template_dir)
        if checklist == NONE:
            content = drop_section(content, REVIEW_CHECKLIST_HEADING)
        prompt = write_prompt(
            ctx.paths.prompts_dir / rounds.prompt_name(rounds.REVIEWER, round_num), content
        )

        meta.update(LAST_STAGE, rounds.REVIEWER)
        return _hand_off(ctx, tokens, prompt, worktree)


def cmd_fix(args: argparse.Namespace) -> int:
    tokens = agents.parse_agent_args(args.agent)
    ctx = _open_loop(args, "fix")

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        round_num = meta.round
        worktree = _validated_worktree(ctx, meta)
        _warn_uncommitted(ctx.root)

        values = _base_values(ctx, meta)
        slug = values["FEATURE_SLUG"]
        review = rounds.current_review_report(ctx.paths.output_dir, slug, round_num)
        values.update(
            {
                "REVIEW_PATH": str(review),
                "OTHER_CONTEXT": snapshot_context_files(
                    args.context or NONE, ctx.cwd, ctx.paths.context_dir
                ),
            }
        )
        content = render_template(rounds.FIXER, values, ctx.cfg.template_dir)
        if round_num > 1:
            content = replace_on_marked_lines(
                content,
                FIX_REPORT_MARKER,
                rounds.fix_report_name(slug, 1),
                rounds.fix_report_name(slug, round_num),
            )
        prompt = write_prompt(
            ctx.paths.prompts_dir / rounds.prompt_name(rounds.FIXER, round_num), content
        )

        meta.set(ROUND, str(round_num + 1))
        meta.set(LAST_STAGE, rounds.FIXER)
        meta.save()
        logger.debug("Advanced %s to round %d", slug, round_num + 1)

        return _hand_off(ctx, tokens, prompt, worktree)


# -------------------------
# commit
# -------------------------


def cmd_commit(args: argparse.Namespace) -> int:
    ctx = _open_loop(args, "commit")

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        _require_lifecycle_keys(meta)
        round_num = meta.round
        branch = require_loop_branch(meta)
        worktree = _validated_worktree(ctx, meta)
        require_checked_out(ctx.root, worktree, branch)

        recorded = meta.commits
        validate_commit_hashes(recorded)

        slug = meta.require(FEATURE_SLUG)
        label = rounds.commit_stage_label(
            meta.require(LAST_STAGE), round_num, meta.worker_pass
        )
        message = f"agl: {slug} {label}"
        new_hash = commit_worktree(worktree, message)

        meta.set_commits(next_commits(worktree, recorded, new_hash))
        meta.save()

    print_output(f"Committed: {message} ({new_hash})", level="quiet")
    return 0


# -------------------------
# merge
# -------------------------


def _draft_commit_message(
    ctx: LoopContext, meta: LoopMetadata, invocation: agents.AgentInvocation
) -> Path:
    """Have the agent write a commit message for the staged squash."""
    ctx.paths.ensure_dirs()
    values = _base_values(ctx, meta)
    slug = values["FEATURE_SLUG"]

    diff_path = ctx.paths.context_dir / "squash-diff.patch"
    diff_path.write_text(git.staged_diff(ctx.root), encoding="utf-8")

    message_path = ctx.paths.output_dir / rounds.commit_message_name(slug)
    message_path.write_text("", encoding="utf-8")

    values.update(
        {
            "HANDOFF_PATHS": collect_output_reports(ctx.paths.output_dir),
            "COMMIT_HASHES": meta.optional(COMMITS) or NONE,
            "SQUASH_DIFF_PATH": str(diff_path),
            "COMMIT_MESSAGE_PATH": str(message_path),
        }
    )
    content = render_template(rounds.COMMIT_WRITER, values, ctx.cfg.template_dir)
    prompt = write_prompt(
        ctx.paths.prompts_dir / rounds.prompt_name(rounds.COMMIT_WRITER), content
    )

    agents.run_agent_once(invocation, prompt, ctx.root)

    if not message_path.is_file() or message_path.stat().st_size == 0:
        raise PreconditionError(f"Commit message draft was not created: {message_path}")
    return message_path


def cmd_merge(args: argparse.Namespace) -> int:
    ctx = _open_loop(args, "merge", require_worktree=False)

    invocation = None
    if args.agent is not None:
        invocation = agents.build_invocation(ctx.cfg.agent.command, args.agent)
        if invocation is None:
            raise UsageError("--agent requires an agent name")

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        _require_lifecycle_keys(meta)
        branch = require_loop_branch(meta)
        worktree = _validated_worktree(ctx, meta)
        leaf = expected_external_leaf(meta, ctx.paths.loop_dir, ctx.root)
        require_clean_trees(worktree, ctx.root)

        if not squash_merge(ctx.root, branch):
            print_output("Merge conflicts detected.", level="error")
            print_output("Resolve conflicts, then: git add -A && git commit", level="error")
            print_output("To abort: git reset --hard HEAD", level="error")
            return 1

        draft = _draft_commit_message(ctx, meta, invocation) if invocation else None

        if not git.commit_with_editor(ctx.root, draft):
            retry = f"git commit -e -F \"{draft}\"" if draft else "git commit"
            print_output(
                "Commit aborted. Squash is staged but not committed.", level="error"
            )
            print_output(f"To finish: rerun '{retry}'", level="error")
            print_output("To abandon: git reset --hard HEAD", level="error")
            return 1

        if args.no_delete:
            print_output(
                f"Merged {branch} (worktree and branch preserved with --no-delete)",
                level="quiet",
            )
            return 0

        teardown(
            ctx.root, branch, worktree, leaf, meta.require(WORKTREE), force=False
        )

    print_output(f"Merged and cleaned up {branch}", level="quiet")
    return 0


# -------------------------
# drop
# -------------------------


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def cmd_drop(args: argparse.Namespace) -> int:
    ctx = _open_loop(args, "drop", require_worktree=False)

    with loop_lock(ctx.paths):
        meta = ctx.paths.load_metadata()
        _require_lifecycle_keys(meta)
        slug = meta.require(FEATURE_SLUG)
        branch = require_loop_branch(meta)
        require_main_root(meta, ctx.root)
        worktree = resolve_safe_worktree(
            meta, ctx.paths.loop_dir, ctx.root, must_exist=False
        )
        leaf = expected_external_leaf(meta, ctx.paths.loop_dir, ctx.root)
        worktree_value = meta.require(WORKTREE)

        print_output("Will remove:", level="quiet")
        print_output(f"  Branch:   {branch}", level="quiet")
        if worktree is not None:
            print_output(f"  Worktree: {worktree_value}", level="quiet")
        if args.all:
            print_output(
                f"  Loop dir: {loop_dir_rel(ctx.paths.loop_dir, ctx.root)}", level="quiet"
            )

        if not args.yes and not _confirm("Proceed? [y/N] "):
            print_output("Aborted.", level="quiet")
            return 1

        teardown(ctx.root, branch, worktree, leaf, worktree_value, force=True)

    if args.all:
        logger.debug("Removing loop directory %s", ctx.paths.loop_dir)
        shutil.rmtree(ctx.paths.loop_dir)
        print_output(
            f"Dropped {slug} (worktree, branch, and loop directory removed)", level="quiet"
        )
    else:
        print_output(
            f"Dropped {slug} (worktree and branch removed; loop directory preserved)",
            level="quiet",
        )
    return 0
