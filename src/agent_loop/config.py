from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .errors import AgentLoopError

CONFIG_DIR = Path("~/.config/solt/agent-loop")
DEFAULT_CONFIG_PATH = CONFIG_DIR / "agl.toml"
DEFAULT_TEMPLATE_DIR = CONFIG_DIR / "templates"

ENV_CONFIG = "AGL_CONFIG"
ENV_WORKTREE_BASE = "AGL_WORKTREE_BASE"


class ConfigError(AgentLoopError):
    """Invalid agl configuration."""

    pass


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class WorktreeConfig:
    base: str = ""  # empty => internal fallback under work/agent-loop/


@dataclass(frozen=True)
class AgentConfig:
    command: str = "agr"


@dataclass(frozen=True)
class TemplatesConfig:
    dir: str = str(DEFAULT_TEMPLATE_DIR)


@dataclass(frozen=True)
class LoggingConfig:
    file: str = ""


@dataclass(frozen=True)
class Config:
    worktree: WorktreeConfig
    agent: AgentConfig
    templates: TemplatesConfig
    logging: LoggingConfig
    source: Optional[Path] = None

    @property
    def template_dir(self) -> Path:
        return Path(self.templates.dir).expanduser()

    @property
    def log_file(self) -> Optional[Path]:
        if not self.logging.file:
            return None
        return Path(self.logging.file).expanduser()


def default_config() -> Config:
    return Config(
        worktree=WorktreeConfig(),
        agent=AgentConfig(),
        templates=TemplatesConfig(),
        logging=LoggingConfig(),
    )


# -------------------------
# Parsing helpers
# -------------------------


def config_path() -> Path:
    env = os.environ.get(ENV_CONFIG)
    if env:
        return Path(env).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e


def _section(data: Dict[str, Any], name: str, path: Path) -> Dict[str, Any]:
    raw = data.get(name, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid [{name}] section in {path}")
    return raw


def _string(raw: Dict[str, Any], key: str, default: str, where: str) -> str:
    value = raw.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid {where}: value must be a string")
    return value


def _worktree_base(raw: Dict[str, Any], path: Path) -> str:
    value = _string(raw, "base", "", f"worktree.base in {path}")
    if " " in value or "\t" in value:
        raise ConfigError(
            f"Invalid worktree.base in {path}: value must not contain spaces or tabs"
        )
    return value


# -------------------------
# Public API
# -------------------------


def load_config(path: Optional[Path] = None) -> Config:
    """Load and normalize configuration.

    Key behavior:
    - Reads $AGL_CONFIG if set, else ~/.config/solt/agent-loop/agl.toml.
    - A missing file yields defaults.
    - A present but malformed file is a ConfigError (never ignored).
    """

    path = path if path is not None else config_path()
    if not path.is_file():
        return default_config()

    data = _load_toml(path)
    worktree_raw = _section(data, "worktree", path)
    agent_raw = _section(data, "agent", path)
    templates_raw = _section(data, "templates", path)
    logging_raw = _section(data, "logging", path)

    agent_command = _string(agent_raw, "command", AgentConfig.command, "agent.command")
    if not agent_command.strip():
        raise ConfigError(f"Invalid agent.command in {path}: value is empty")

    return Config(
        worktree=WorktreeConfig(base=_worktree_base(worktree_raw, path)),
        agent=AgentConfig(command=agent_command.strip()),
        templates=TemplatesConfig(
            dir=_string(templates_raw, "dir", TemplatesConfig.dir, "templates.dir")
        ),
        logging=LoggingConfig(
            file=_string(logging_raw, "file", "", "logging.file")
        ),
        source=path,
    )


def resolve_worktree_base(cli_value: Optional[str], cfg: Config) -> str:
    """Pick the worktree base: CLI flag, then $AGL_WORKTREE_BASE, then config."""
    if cli_value:
        return cli_value
    env = os.environ.get(ENV_WORKTREE_BASE)
    if env:
        return env
    return cfg.worktree.base
