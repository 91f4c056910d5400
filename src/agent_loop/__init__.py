"""Agent Loop: isolated, resumable development loops on git worktrees."""

__version__ = "0.4.0"
