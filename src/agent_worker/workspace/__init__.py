"""Workspace isolation for agent tasks."""

from .worktree_manager import WorktreeError, WorktreeHandle, WorktreeInfo, WorktreeManager

__all__ = [
    "WorktreeError",
    "WorktreeHandle",
    "WorktreeInfo",
    "WorktreeManager",
]
