"""Shared fixtures: throwaway git repositories and isolated agl config."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import agent_loop.output as output_module


def git(cwd: Path, *args: str) -> str:
    """Run git in cwd and return stdout (test helper)."""
    cp = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return cp.stdout


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory, monkeypatch):
    """Point agl at a config file that does not exist and clear overrides."""
    cfg_dir = tmp_path_factory.mktemp("agl-config")
    monkeypatch.setenv("AGL_CONFIG", str(cfg_dir / "agl.toml"))
    monkeypatch.delenv("AGL_WORKTREE_BASE", raising=False)
    monkeypatch.delenv("AGL_VERBOSITY", raising=False)
    return cfg_dir / "agl.toml"


@pytest.fixture(autouse=True)
def reset_output_config():
    """Reset global output config before and after each test."""
    original = output_module._output_config
    output_module._output_config = None
    yield
    output_module._output_config = original


@pytest.fixture
def temp_git_repo(tmp_path):
    """Create a temporary git repository for testing."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    git(repo_path, "init")

    # Configure git user for commits
    git(repo_path, "config", "user.email", "test@example.com")
    git(repo_path, "config", "user.name", "Test User")

    # Disable GPG signing to avoid keychain prompts in tests
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / ".gitignore").write_text("work/\n")
    (repo_path / "test.txt").write_text("initial content\n")
    git(repo_path, "add", ".gitignore", "test.txt")
    git(repo_path, "commit", "-m", "Initial commit")

    return repo_path.resolve()


@pytest.fixture
def in_repo(temp_git_repo, monkeypatch):
    """Run the test from inside the temporary repository."""
    monkeypatch.chdir(temp_git_repo)
    return temp_git_repo


@pytest.fixture
def plan_file(tmp_path):
    """A plan outside the repository, so the primary tree stays clean."""
    plan = tmp_path / "plan.md"
    plan.write_text("# Plan\n\n- add the thing\n")
    return plan
