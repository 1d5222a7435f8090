"""Local orchestration of coding agents across git worktrees and tmux sessions."""

__version__ = "0.1.0"
