"""Prompt template lookup and rendering.

Built-in templates ship in ``agent_loop/templates/``. A file with the same
name in the user's template directory (``templates.dir`` in agl.toml,
default ``~/.config/solt/agent-loop/templates``) takes precedence, so
prompts can be customised one file at a time.

Rendering is literal ``{{KEY}}`` replacement. Unknown placeholders are left
in place so a customised template never breaks on an unfamiliar key.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from .errors import AgentLoopError

logger = logging.getLogger(__name__)


class TemplateError(AgentLoopError):
    """Error during template operations."""

    pass


def _builtin_dir() -> Path:
    # templates/ lives alongside this module
    return Path(__file__).resolve().parent / "templates"


def find_template(name: str, override_dir: Optional[Path] = None) -> Path:
    """Locate ``<name>.md``, preferring the override directory.

    Raises:
        TemplateError: If neither location has the template
    """
    filename = f"{name}.md"
    if override_dir is not None:
        candidate = override_dir / filename
        if candidate.is_file():
            return candidate
    builtin = _builtin_dir() / filename
    if builtin.is_file():
        return builtin
    searched = override_dir / filename if override_dir is not None else builtin
    raise TemplateError(f"Template not found: {searched}")


def render(text: str, values: Mapping[str, str]) -> str:
    """Replace every ``{{KEY}}`` with values[KEY].

    Examples:
        >>> render("Feature: {{FEATURE_NAME}}", {"FEATURE_NAME": "Add Auth"})
        'Feature: Add Auth'
    """
    for key, value in values.items():
        text = text.replace("{{" + key + "}}", value)
    return text


def drop_none_paragraph(text: str) -> str:
    """Remove each line that is exactly ``None`` together with the line after it."""
    lines = text.split("\n")
    out = []
    i = 0
    while i < len(lines):
        if lines[i] == "None":
            i += 2
            continue
        out.append(lines[i])
        i += 1
    return "\n".join(out)


def drop_section(text: str, heading: str) -> str:
    """Remove a ``### `` section (heading included) up to the next ``### ``."""
    out = []
    skipping = False
    for line in text.split("\n"):
        if line == heading:
            skipping = True
            continue
        if skipping and line.startswith("### "):
            skipping = False
        if not skipping:
            out.append(line)
    return "\n".join(out)


def replace_on_marked_lines(text: str, marker: str, old: str, new: str) -> str:
    """Replace old with new, but only on lines that contain marker."""
    lines = []
    for line in text.split("\n"):
        if marker in line:
            line = line.replace(old, new)
        lines.append(line)
    return "\n".join(lines)


def slug_to_name(slug: str) -> str:
    """``add-auth-middleware`` -> ``Add Auth Middleware``."""
    return " ".join(part[:1].upper() + part[1:].lower() for part in slug.split("-") if part)


def render_template(
    name: str, values: Mapping[str, str], override_dir: Optional[Path] = None
) -> str:
    path = find_template(name, override_dir)
    logger.debug("Rendering template %s", path)
    return render(path.read_text(encoding="utf-8"), values)


def write_prompt(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
