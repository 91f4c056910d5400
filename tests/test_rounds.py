"""Tests for round and prompt versioning."""

from __future__ import annotations

import os

import pytest
from hypothesis import given
from hypothesis import strategies as st

from agent_loop.errors import PreconditionError
from agent_loop.rounds import (
    commit_stage_label,
    current_review_report,
    find_latest_prompt,
    fix_report_name,
    next_worker_pass,
    previous_review_reports,
    prompt_name,
    prompt_sort_key,
    required_prior_fix_report,
    review_report_name,
)


def test_prompt_names():
    assert prompt_name("reviewer", 1) == "reviewer.md"
    assert prompt_name("reviewer", 2) == "reviewer-r2.md"
    assert prompt_name("fixer", 3) == "fixer-r3.md"
    assert prompt_name("enhancer") == "enhancer.md"


def test_report_names():
    assert review_report_name("add-auth", 1) == "REVIEW-add-auth.md"
    assert review_report_name("add-auth", 2) == "REVIEW-r2-add-auth.md"
    assert fix_report_name("add-auth", 1) == "FIX-add-auth.md"
    assert fix_report_name("add-auth", 4) == "FIX-r4-add-auth.md"


@pytest.mark.parametrize(
    "name, key",
    [
        ("worker-r3.md", "worker-r000000003.md"),
        ("worker-r12.md", "worker-r000000012.md"),
        ("notes-7.md", "notes-000000007.md"),
        ("worker.md", "worker-000000001.md"),
        ("README", "README"),
    ],
)
def test_prompt_sort_key(name, key):
    assert prompt_sort_key(name) == key


@given(a=st.integers(min_value=1, max_value=10**8), b=st.integers(min_value=1, max_value=10**8))
def test_prompt_sort_key_orders_numerically(a, b):
    ka = prompt_sort_key(f"fixer-r{a}.md")
    kb = prompt_sort_key(f"fixer-r{b}.md")
    assert (ka < kb) == (a < b)


def _touch(path, mtime):
    path.write_text(path.name)
    os.utime(path, (mtime, mtime))


def test_find_latest_prompt_prefers_newest(tmp_path):
    _touch(tmp_path / "worker.md", 1000)
    _touch(tmp_path / "reviewer.md", 2000)
    assert find_latest_prompt(tmp_path).name == "reviewer.md"


def test_find_latest_prompt_tie_break_by_round(tmp_path):
    for name in ("worker.md", "worker-r2.md", "worker-r10.md"):
        _touch(tmp_path / name, 1000)
    assert find_latest_prompt(tmp_path).name == "worker-r10.md"


def test_find_latest_prompt_ignores_sub_second_differences(tmp_path):
    _touch(tmp_path / "worker-r2.md", 1000.1)
    _touch(tmp_path / "worker.md", 1000.9)
    assert find_latest_prompt(tmp_path).name == "worker-r2.md"


def test_find_latest_prompt_empty(tmp_path):
    assert find_latest_prompt(tmp_path) is None
    assert find_latest_prompt(tmp_path / "missing") is None


def test_next_worker_pass(tmp_path):
    assert next_worker_pass(tmp_path) == 1
    (tmp_path / "worker.md").write_text("")
    assert next_worker_pass(tmp_path) == 1
    (tmp_path / "worker-r1.md").write_text("")
    (tmp_path / "worker-r4.md").write_text("")
    assert next_worker_pass(tmp_path) == 5


def test_required_prior_fix_report(tmp_path):
    with pytest.raises(PreconditionError) as exc:
        required_prior_fix_report(tmp_path, "s", 2)
    assert str(exc.value) == (
        f"Fix report FIX-s.md not found in {tmp_path}. Run the fixer for round 1 first."
    )

    (tmp_path / "FIX-s.md").write_text("fixed")
    assert required_prior_fix_report(tmp_path, "s", 2) == tmp_path / "FIX-s.md"

    with pytest.raises(PreconditionError, match="FIX-r2-s.md"):
        required_prior_fix_report(tmp_path, "s", 3)


def test_current_review_report(tmp_path):
    with pytest.raises(PreconditionError, match="Run the reviewer first"):
        current_review_report(tmp_path, "s", 1)
    (tmp_path / "REVIEW-r2-s.md").write_text("")
    assert current_review_report(tmp_path, "s", 2).name == "REVIEW-r2-s.md"


def test_previous_review_reports(tmp_path):
    (tmp_path / "REVIEW-s.md").write_text("")
    (tmp_path / "REVIEW-r3-s.md").write_text("")
    found = previous_review_reports(tmp_path, "s", 4)
    assert [p.name for p in found] == ["REVIEW-s.md", "REVIEW-r3-s.md"]
    assert previous_review_reports(tmp_path, "s", 1) == []


@pytest.mark.parametrize(
    "stage, round_num, worker_pass, label",
    [
        ("worker", 1, None, "worker"),
        ("worker", 1, 2, "worker-r2"),
        ("enhancer", 1, None, "enhancer"),
        ("reviewer", 2, None, "reviewer"),
        ("fixer", 2, None, "fixer"),
        ("fixer", 3, None, "fixer-r2"),
    ],
)
def test_commit_stage_label(stage, round_num, worker_pass, label):
    assert commit_stage_label(stage, round_num, worker_pass) == label
