"""Tests for agent argument handling and invocation."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from agent_loop.agents import (
    AgentError,
    AgentInvocation,
    build_invocation,
    exec_agent,
    format_manual_commands,
    parse_agent_args,
    run_agent_once,
)
from agent_loop.errors import UsageError


def test_invocation_argv():
    inv = AgentInvocation("agr", ["claude", "--model", "opus"])
    assert inv.agent == "claude"
    assert inv.argv(Path("/tmp/p.md")) == ["agr", "claude", "--model", "opus", "/tmp/p.md"]


@pytest.mark.parametrize(
    "tokens, expected",
    [
        (None, []),
        ([], []),
        (["claude"], ["claude"]),
        (["--", "codex", "--full-auto"], ["codex", "--full-auto"]),
        (["claude", "--", "-x"], ["claude", "--", "-x"]),
    ],
)
def test_parse_agent_args(tokens, expected):
    assert parse_agent_args(tokens) == expected


@pytest.mark.parametrize("tokens", [["--model", "opus"], ["--", "-v"]])
def test_parse_agent_args_rejects_flag_as_agent(tokens):
    with pytest.raises(UsageError, match="Unknown option or missing agent before flags"):
        parse_agent_args(tokens)


def test_build_invocation():
    assert build_invocation("agr", []) is None
    inv = build_invocation("agr", ["claude", "-p"])
    assert inv == AgentInvocation("agr", ["claude", "-p"])


def test_format_manual_commands():
    text = format_manual_commands(
        "agr",
        "work/agent-loop/x/prompts/worker.md",
        Path("/r/work/agent-loop/x/prompts/worker.md"),
        Path("/wt"),
    )
    assert text.splitlines() == [
        "Prompt: work/agent-loop/x/prompts/worker.md",
        "Run:",
        '  (cd "/wt" && agr claude "/r/work/agent-loop/x/prompts/worker.md")',
        '  (cd "/wt" && agr codex  "/r/work/agent-loop/x/prompts/worker.md")',
    ]


# -------------------------
# run_agent_once
# -------------------------


def _script_agent(tmp_path: Path, body: str) -> AgentInvocation:
    """An invocation whose "agent" is a python one-liner run by the interpreter."""
    script = tmp_path / "fake_agent.py"
    script.write_text(body)
    return AgentInvocation(sys.executable, [str(script)])


def test_run_agent_once_runs_in_cwd(tmp_path):
    inv = _script_agent(
        tmp_path,
        "import sys\n"
        "prompt = sys.argv[1]\n"
        "open('seen.txt', 'w').write(prompt)\n"
        "print('agent chatter')\n",
    )
    workdir = tmp_path / "wt"
    workdir.mkdir()
    prompt = tmp_path / "prompt.md"

    run_agent_once(inv, prompt, workdir)

    assert (workdir / "seen.txt").read_text() == str(prompt)


def test_run_agent_once_failure(tmp_path):
    inv = _script_agent(tmp_path, "import sys\nsys.exit(4)\n")
    with pytest.raises(AgentError, match="exited with status 4"):
        run_agent_once(inv, tmp_path / "p.md", tmp_path)


def test_run_agent_once_missing_launcher(tmp_path):
    inv = AgentInvocation("agl-no-such-launcher", ["claude"])
    with pytest.raises(AgentError, match="Agent launcher not found"):
        run_agent_once(inv, tmp_path / "p.md", tmp_path)


# -------------------------
# exec_agent
# -------------------------


def test_exec_agent_changes_dir_and_execs(tmp_path, monkeypatch):
    seen = {}
    monkeypatch.setattr("agent_loop.agents.check_command_available", lambda cmd: True)
    monkeypatch.setattr("agent_loop.agents.os.chdir", lambda path: seen.setdefault("cwd", path))
    monkeypatch.setattr(
        "agent_loop.agents.os.execvp",
        lambda file, argv: seen.update(file=file, argv=argv),
    )
    inv = AgentInvocation("agr", ["claude", "--model", "opus"])
    prompt = tmp_path / "worker.md"

    exec_agent(inv, prompt, tmp_path)

    assert seen["cwd"] == tmp_path
    assert seen["file"] == "agr"
    assert seen["argv"] == ["agr", "claude", "--model", "opus", str(prompt)]


def test_exec_agent_missing_launcher(tmp_path, monkeypatch):
    monkeypatch.setattr("agent_loop.agents.os.execvp", pytest.fail)
    inv = AgentInvocation("agl-no-such-launcher", ["claude"])
    with pytest.raises(AgentError, match="Agent launcher not found"):
        exec_agent(inv, tmp_path / "p.md", tmp_path)
