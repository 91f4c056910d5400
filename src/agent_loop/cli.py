from __future__ import annotations

import argparse
import logging
import sys
from enum import Enum
from typing import Callable, Dict

from . import __version__, commands
from .config import load_config
from .errors import AgentLoopError
from .logging_config import setup_logging
from .output import OutputConfig, print_output, set_output_config

logger = logging.getLogger(__name__)


class Command(str, Enum):
    INIT = "init"
    WORK = "work"
    COMMIT = "commit"
    ENHANCE = "enhance"
    REVIEW = "review"
    FIX = "fix"
    MERGE = "merge"
    DROP = "drop"


HANDLERS: Dict[Command, Callable[[argparse.Namespace], int]] = {
    Command.INIT: commands.cmd_init,
    Command.WORK: commands.cmd_work,
    Command.COMMIT: commands.cmd_commit,
    Command.ENHANCE: commands.cmd_enhance,
    Command.REVIEW: commands.cmd_review,
    Command.FIX: commands.cmd_fix,
    Command.MERGE: commands.cmd_merge,
    Command.DROP: commands.cmd_drop,
}


class _AglArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(1, f"Error: {message}\n")


def _single_line(value: str) -> str:
    if "\n" in value or "\r" in value:
        raise argparse.ArgumentTypeError("Multiline values are not supported")
    return value


def _add_dir(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--dir",
        default=None,
        help="Loop directory (default: most recent loop under work/agent-loop/)",
    )


def _add_agent(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "agent",
        nargs=argparse.REMAINDER,
        help="Agent name and flags; without it the run command is printed",
    )


def build_parser() -> argparse.ArgumentParser:
    p = _AglArgumentParser(
        prog="agl",
        description="agl: isolated, resumable agent development loops on git worktrees",
    )
    p.add_argument("--version", action="version", version=f"agent-loop {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    p.add_argument("-q", "--quiet", action="store_true", help="Only print results and errors")

    sub = p.add_subparsers(dest="cmd", required=True, parser_class=_AglArgumentParser)

    p_init = sub.add_parser(
        Command.INIT.value, help="Create a loop: branch, worktree and worker prompt"
    )
    p_init.add_argument("slug", nargs="?", default=None, help="Feature slug (e.g. add-auth)")
    p_init.add_argument("--plan", default=None, help="Plan file to snapshot into the loop")
    p_init.add_argument("--task", type=_single_line, default=None, help="Task description")
    p_init.add_argument(
        "--context", type=_single_line, default=None, help="Comma-separated context files"
    )
    p_init.add_argument(
        "--worktree-base",
        dest="worktree_base",
        default=None,
        help="Create the worktree under this directory instead of inside the repo",
    )

    p_work = sub.add_parser(
        Command.WORK.value, help="Run the latest prompt, or scaffold a new worker pass"
    )
    _add_dir(p_work)
    p_work.add_argument("--plan", default=None, help="Plan for a new worker pass")
    p_work.add_argument("--task", type=_single_line, default=None, help="Task description")
    p_work.add_argument(
        "--context", type=_single_line, default=None, help="Comma-separated context files"
    )
    _add_agent(p_work)

    p_commit = sub.add_parser(
        Command.COMMIT.value, help="Commit all worktree changes with a stage message"
    )
    _add_dir(p_commit)

    p_enhance = sub.add_parser(Command.ENHANCE.value, help="Scaffold the enhancer prompt")
    _add_dir(p_enhance)
    p_enhance.add_argument(
        "--context", type=_single_line, default=None, help="Comma-separated context files"
    )
    p_enhance.add_argument(
        "--commits", type=_single_line, default=None, help="Commits to consider"
    )
    p_enhance.add_argument(
        "--instructions", type=_single_line, default=None, help="Additional instructions"
    )
    _add_agent(p_enhance)

    p_review = sub.add_parser(
        Command.REVIEW.value, help="Scaffold the reviewer prompt for the current round"
    )
    _add_dir(p_review)
    p_review.add_argument(
        "--files", type=_single_line, default=None, help="Files to focus the review on"
    )
    p_review.add_argument(
        "--context", type=_single_line, default=None, help="Comma-separated context files"
    )
    p_review.add_argument(
        "--commits", type=_single_line, default=None, help="Commits to review"
    )
    p_review.add_argument(
        "--checklist", type=_single_line, default=None, help="Review checklist"
    )
    _add_agent(p_review)

    p_fix = sub.add_parser(
        Command.FIX.value, help="Scaffold the fixer prompt and advance the round"
    )
    _add_dir(p_fix)
    p_fix.add_argument(
        "--context", type=_single_line, default=None, help="Comma-separated context files"
    )
    _add_agent(p_fix)

    p_merge = sub.add_parser(
        Command.MERGE.value, help="Squash-merge the loop branch into the current branch"
    )
    p_merge.add_argument("slug", nargs="?", default=None, help="Feature slug")
    _add_dir(p_merge)
    p_merge.add_argument(
        "--no-delete",
        dest="no_delete",
        action="store_true",
        help="Keep the worktree and branch after merging",
    )
    p_merge.add_argument(
        "--agent",
        nargs=argparse.REMAINDER,
        default=None,
        help="Agent (and flags) that drafts the commit message",
    )

    p_drop = sub.add_parser(
        Command.DROP.value, help="Abandon a loop: remove its worktree and branch"
    )
    p_drop.add_argument("slug", nargs="?", default=None, help="Feature slug")
    _add_dir(p_drop)
    p_drop.add_argument(
        "--all", action="store_true", help="Also remove the loop directory"
    )
    p_drop.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask for confirmation"
    )

    return p


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    verbosity = "quiet" if args.quiet else "verbose" if args.verbose else "normal"
    set_output_config(OutputConfig(verbosity=verbosity))

    try:
        cfg = load_config()
        args.config = cfg
        setup_logging(verbose=args.verbose, log_file=cfg.log_file, quiet=args.quiet)

        logger.debug("agent-loop v%s starting", __version__)
        logger.debug("Command: %s", args.cmd)

        return int(HANDLERS[Command(args.cmd)](args))
    except AgentLoopError as e:
        logger.debug("Command failed", exc_info=True)
        print_output(f"Error: {e}", level="error")
        return 1
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        print_output(f"Error: {e}", level="error")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
