"""Tests for prompt template lookup and rendering."""

from __future__ import annotations

import pytest

from agent_loop.templates import (
    TemplateError,
    drop_none_paragraph,
    drop_section,
    find_template,
    render,
    render_template,
    replace_on_marked_lines,
    slug_to_name,
)

BUILTINS = ["worker", "worker-next", "enhancer", "reviewer", "fixer", "commit-writer"]


@pytest.mark.parametrize("name", BUILTINS)
def test_builtin_templates_ship(name):
    path = find_template(name)
    assert path.name == f"{name}.md"
    assert "{{FEATURE_NAME}}" in path.read_text()


def test_override_dir_wins(tmp_path):
    (tmp_path / "worker.md").write_text("custom {{FEATURE_SLUG}}")
    assert find_template("worker", tmp_path) == tmp_path / "worker.md"
    assert render_template("worker", {"FEATURE_SLUG": "x"}, tmp_path) == "custom x"


def test_override_dir_falls_back_to_builtin(tmp_path):
    assert find_template("fixer", tmp_path).parent.name == "templates"


def test_missing_template(tmp_path):
    with pytest.raises(TemplateError, match="Template not found"):
        find_template("nope", tmp_path)


def test_render_replaces_all_and_keeps_unknown():
    text = "{{A}} and {{A}} but {{B}}"
    assert render(text, {"A": "x"}) == "x and x but {{B}}"


def test_render_values_are_literal():
    assert render("{{P}}", {"P": r"a|b\1&c"}) == r"a|b\1&c"


def test_drop_none_paragraph():
    text = "intro\nNone\n\nnext\nNone of this\n"
    assert drop_none_paragraph(text) == "intro\nnext\nNone of this\n"


def test_drop_section():
    text = "\n".join(
        [
            "### Context",
            "a",
            "### Review Checklist",
            "None",
            "",
            "### Instructions",
            "b",
        ]
    )
    assert drop_section(text, "### Review Checklist") == "### Context\na\n### Instructions\nb"


def test_reviewer_without_checklist_loses_section():
    text = render_template("reviewer", {"REVIEW_CHECKLIST": "None"})
    assert "### Review Checklist" in text
    stripped = drop_section(text, "### Review Checklist")
    assert "### Review Checklist" not in stripped
    assert "{{REVIEW_OUTPUT_PATH}}" in stripped


def test_replace_on_marked_lines():
    text = "see FIX-s.md\nproduce a fix report at out/FIX-s.md\n"
    out = replace_on_marked_lines(text, "produce a fix report at", "FIX-s.md", "FIX-r2-s.md")
    assert out == "see FIX-s.md\nproduce a fix report at out/FIX-r2-s.md\n"


def test_fixer_template_has_marked_report_line():
    text = render_template("fixer", {"OUTPUT_DIR": "/o", "FEATURE_SLUG": "s"})
    marked = [line for line in text.splitlines() if "produce a fix report at" in line]
    assert marked and "/o/FIX-s.md" in marked[0]


def test_enhancer_instructions_placeholder_on_own_line():
    text = render_template("enhancer", {"ADDITIONAL_INSTRUCTIONS": "None"})
    assert "None" in text.splitlines()
    assert "None" not in drop_none_paragraph(text).splitlines()


@pytest.mark.parametrize(
    "slug, name",
    [("add-auth-middleware", "Add Auth Middleware"), ("x", "X"), ("api-v2", "Api V2")],
)
def test_slug_to_name(slug, name):
    assert slug_to_name(slug) == name
