"""Per-work-item workspace provisioning.

Each work item gets its own git worktree on its own branch under a fixed
base directory. Workspaces are reused for every later event on the same
work item and removed by retention-based cleanup.
"""

from .worktree import (
    GitWorktreeProvider,
    WorkingCopy,
    WorkingCopyProvider,
    WorkspaceConfig,
    WorkspaceError,
    WorkspaceHandle,
    WorkspaceProvisionError,
    WorkspaceProvisioner,
    WorktreeCommandError,
    parse_worktree_porcelain,
    sanitize_work_item_id,
)

__all__ = [
    "GitWorktreeProvider",
    "WorkingCopy",
    "WorkingCopyProvider",
    "WorkspaceConfig",
    "WorkspaceError",
    "WorkspaceHandle",
    "WorkspaceProvisionError",
    "WorkspaceProvisioner",
    "WorktreeCommandError",
    "parse_worktree_porcelain",
    "sanitize_work_item_id",
]
