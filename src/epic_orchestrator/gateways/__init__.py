"""Concrete gateways: GitHub CLI for the tracker, tmux for worker sessions, git for worktrees."""

from .git import GitWorktreeGateway
from .github import GhTrackerGateway
from .tmux import TmuxSessionGateway

__all__ = ["GhTrackerGateway", "GitWorktreeGateway", "TmuxSessionGateway"]
