"""Workspace provisioning for agent session execution.

Creates one isolated working copy of the repository per work item so that
concurrent runs never edit the same files. Working copies are git worktrees
on their own branch, placed under a fixed base directory and named by a
deterministic sanitization of the work item id, so every continuation
message for the same issue lands in the same workspace.

All VCS access goes through the WorkingCopyProvider port. GitWorktreeProvider
is the production implementation; tests substitute an in-memory fake.
"""

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

WORKSPACE_DIR_PERMISSIONS = 0o755
GIT_COMMAND_TIMEOUT_SECONDS = 120

_UNSAFE_CHARACTERS = re.compile(r"[^a-zA-Z0-9_-]")
TOKEN_DIGEST_LENGTH = 8


@dataclass
class WorkspaceConfig:
    """Configuration for workspace provisioning.

    Attributes:
        base_path: Directory under which every working copy is created.
        branch_prefix: Prefix for the per-work-item branch names.
        retention_hours: Age after which cleanup removes a working copy.
    """

    base_path: Path
    branch_prefix: str = "dispatch/"
    retention_hours: int = 168


@dataclass(frozen=True)
class WorkspaceHandle:
    """A provisioned working copy.

    Attributes:
        work_item_id: Sanitized work item token the workspace is keyed by.
        path: Absolute path of the working copy.
        branch_name: Branch checked out in the working copy.
        created_at: Directory modification time (UTC).
    """

    work_item_id: str
    path: Path
    branch_name: str
    created_at: datetime


@dataclass(frozen=True)
class WorkingCopy:
    """One entry of the VCS's working-copy registry."""

    path: Path
    branch: str = ""


class WorkspaceError(Exception):
    """Base class for workspace failures."""

    pass


class WorkspaceProvisionError(WorkspaceError):
    """Raised when a workspace cannot be created for a work item."""

    pass


class WorktreeCommandError(WorkspaceError):
    """Raised when a VCS command fails, times out, or cannot be started."""

    def __init__(
        self,
        command: List[str],
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{' '.join(command)}: {message}")


@runtime_checkable
class WorkingCopyProvider(Protocol):
    """Port over the VCS operations the provisioner depends on."""

    async def create(
        self, repo_path: Path, path: Path, branch: str, new_branch: bool
    ) -> None:
        """Create a working copy at path on a new or existing branch."""
        ...

    async def list(self, repo_path: Path) -> List[WorkingCopy]:
        """Return every working copy registered for the repository."""
        ...

    async def remove(self, repo_path: Path, path: Path) -> None:
        """Remove the working copy at path."""
        ...


class GitWorktreeProvider:
    """WorkingCopyProvider backed by `git worktree`.

    Runs git as an async subprocess without blocking the event loop,
    enforces a timeout per command, and translates every failure mode
    into WorktreeCommandError.

    Attributes:
        git_path: Git executable.
        timeout_seconds: Maximum time a single git command may take.
    """

    def __init__(
        self,
        git_path: str = "git",
        timeout_seconds: int = GIT_COMMAND_TIMEOUT_SECONDS,
    ):
        self.git_path = git_path
        self.timeout_seconds = timeout_seconds

    async def create(
        self, repo_path: Path, path: Path, branch: str, new_branch: bool
    ) -> None:
        if new_branch:
            await self._run_git(
                repo_path, "worktree", "add", "-b", branch, str(path)
            )
        else:
            await self._run_git(repo_path, "worktree", "add", str(path), branch)

    async def list(self, repo_path: Path) -> List[WorkingCopy]:
        output = await self._run_git(repo_path, "worktree", "list", "--porcelain")
        return parse_worktree_porcelain(output)

    async def remove(self, repo_path: Path, path: Path) -> None:
        await self._run_git(repo_path, "worktree", "remove", "--force", str(path))

    async def _run_git(self, repo_path: Path, *args: str) -> str:
        """Run a git command in repo_path and return its stdout.

        Raises:
            WorktreeCommandError: On non-zero exit, timeout, or OS error.
        """
        command = [self.git_path, *args]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(repo_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise WorktreeCommandError(
                command, f"Failed to execute git: {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise WorktreeCommandError(
                command, f"Timed out after {self.timeout_seconds}s"
            ) from exc

        if process.returncode != 0:
            error_output = stderr.decode("utf-8", errors="replace").strip()
            raise WorktreeCommandError(
                command,
                error_output or f"exit code {process.returncode}",
                returncode=process.returncode,
                stderr=error_output,
            )

        return stdout.decode("utf-8", errors="replace")


def parse_worktree_porcelain(output: str) -> List[WorkingCopy]:
    """Parse `git worktree list --porcelain` output.

    Entries are separated by blank lines; each starts with a
    "worktree <path>" line and may carry "branch refs/heads/<name>".
    Detached or bare entries get an empty branch.
    """
    working_copies = []

    for entry in output.strip().split("\n\n"):
        path = None
        branch = ""
        for line in entry.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("branch "):
                branch = line[len("branch "):].removeprefix("refs/heads/")
        if path:
            working_copies.append(WorkingCopy(path=Path(path), branch=branch))

    return working_copies


def sanitize_work_item_id(work_item_id: str) -> str:
    """Map a work item id to a filesystem- and ref-safe token.

    Every character outside [a-zA-Z0-9_-] becomes "-". When that changes the
    id, a short digest of the original id is appended so that ids differing
    only in unsafe characters ("a/b", "a.b") still map to distinct tokens.
    Ids that are already safe, such as Linear's UUIDs, are returned as is.
    """
    token = _UNSAFE_CHARACTERS.sub("-", work_item_id)
    if token == work_item_id:
        return token
    digest = hashlib.sha256(work_item_id.encode("utf-8", "surrogatepass")).hexdigest()
    return f"{token}-{digest[:TOKEN_DIGEST_LENGTH]}"


class WorkspaceProvisioner:
    """Creates, reuses, lists and removes per-work-item workspaces.

    Attributes:
        config: Workspace configuration (base path, branch prefix, retention).
        provider: VCS adapter used for every working-copy operation.
    """

    def __init__(
        self,
        config: WorkspaceConfig,
        provider: Optional[WorkingCopyProvider] = None,
    ):
        self.config = config
        self.provider = provider or GitWorktreeProvider()

    def path_for(self, work_item_id: str) -> Path:
        """Canonical workspace path for a work item.

        Raises:
            WorkspaceProvisionError: If the id sanitizes to an empty token.
        """
        token = sanitize_work_item_id(work_item_id)
        if not token:
            raise WorkspaceProvisionError("Work item id cannot be empty")
        return self.config.base_path / token

    def branch_for(self, work_item_id: str) -> str:
        """Branch name used for a work item's workspace."""
        return f"{self.config.branch_prefix}{sanitize_work_item_id(work_item_id)}"

    async def acquire(self, work_item_id: str, repo_path: Path) -> Path:
        """Return the workspace for a work item, creating it if needed.

        An existing working copy is reused unchanged. Existence is decided by
        the VCS's own working-copy registry, not by the directory being
        present. Creation first tries a new branch and falls back to
        attaching the existing branch.

        Args:
            work_item_id: Tracker id of the work item.
            repo_path: Repository the working copy belongs to.

        Returns:
            Absolute path of the workspace.

        Raises:
            WorkspaceProvisionError: If neither creation attempt succeeds.
        """
        workspace_path = self.path_for(work_item_id)
        branch = self.branch_for(work_item_id)

        if await self._is_registered(repo_path, workspace_path):
            logger.info(
                "Reusing existing workspace",
                extra={"work_item_id": work_item_id, "workspace": str(workspace_path)},
            )
            return workspace_path

        self._create_base_directory()

        try:
            await self.provider.create(repo_path, workspace_path, branch, True)
        except WorkspaceError as new_branch_error:
            logger.debug(
                "Creating branch failed, attaching existing branch: %s",
                new_branch_error,
            )
            try:
                await self.provider.create(repo_path, workspace_path, branch, False)
            except WorkspaceError as exc:
                if await self._is_registered(repo_path, workspace_path):
                    return workspace_path
                raise WorkspaceProvisionError(
                    f"Failed to create workspace at {workspace_path}: "
                    f"{new_branch_error}"
                ) from exc

        logger.info(
            "Created workspace",
            extra={
                "work_item_id": work_item_id,
                "workspace": str(workspace_path),
                "branch": branch,
            },
        )
        return workspace_path

    async def release(self, work_item_id: str, repo_path: Path) -> None:
        """Remove a work item's workspace. Failures are logged, not raised."""
        try:
            workspace_path = self.path_for(work_item_id)
        except WorkspaceProvisionError:
            logger.warning("Cannot release workspace for empty work item id")
            return
        await self._remove_quietly(repo_path, workspace_path)

    async def list(self, repo_path: Path) -> List[WorkspaceHandle]:
        """List working copies that live under the base directory.

        Returns an empty list when the VCS cannot be queried.
        """
        try:
            working_copies = await self.provider.list(repo_path)
        except WorkspaceError:
            logger.warning(
                "Failed to list workspaces", extra={"repository": str(repo_path)}
            )
            return []

        return [
            self._to_handle(copy)
            for copy in working_copies
            if self._is_under_base(copy.path)
        ]

    async def cleanup(
        self,
        repo_path: Path,
        older_than_hours: Optional[int] = None,
        exclude: Iterable[Path] = (),
    ) -> int:
        """Remove workspaces older than the retention period.

        Age is measured from the workspace directory's modification time,
        which only moves when entries directly under it change. Workspaces
        in use by executing runs must therefore be passed in exclude.

        Args:
            repo_path: Repository the working copies belong to.
            older_than_hours: Age threshold; defaults to the configured
                retention period.
            exclude: Workspace paths that are never removed.

        Returns:
            Number of workspaces removed.

        Raises:
            ValueError: If older_than_hours is less than 1.
        """
        hours = older_than_hours
        if hours is None:
            hours = self.config.retention_hours
        if hours < 1:
            raise ValueError(f"older_than_hours must be at least 1, got {hours}")

        threshold = time.time() - hours * 3600
        in_use = {path.resolve() for path in exclude}
        removed_count = 0

        for handle in await self.list(repo_path):
            if handle.created_at.timestamp() >= threshold:
                continue
            if handle.path.resolve() in in_use:
                logger.info(
                    "Skipping workspace in use", extra={"workspace": str(handle.path)}
                )
                continue
            if await self._remove_quietly(repo_path, handle.path):
                removed_count += 1

        logger.info(
            "Workspace cleanup complete",
            extra={"removed_count": removed_count, "older_than_hours": hours},
        )
        return removed_count

    async def _is_registered(self, repo_path: Path, workspace_path: Path) -> bool:
        """Check the VCS registry for a working copy at workspace_path."""
        try:
            working_copies = await self.provider.list(repo_path)
        except WorkspaceError as exc:
            logger.debug("Could not query working copies: %s", exc)
            return False

        target = workspace_path.resolve()
        return any(copy.path.resolve() == target for copy in working_copies)

    def _is_under_base(self, path: Path) -> bool:
        base = self.config.base_path.resolve()
        resolved = path.resolve()
        return resolved != base and resolved.is_relative_to(base)

    def _create_base_directory(self) -> None:
        """Create the base directory and any missing parents.

        Raises:
            WorkspaceProvisionError: If directory creation fails.
        """
        try:
            self.config.base_path.mkdir(parents=True, exist_ok=True)
            self.config.base_path.chmod(WORKSPACE_DIR_PERMISSIONS)
        except OSError as exc:
            raise WorkspaceProvisionError(
                f"Failed to create workspace base at {self.config.base_path}: {exc}"
            ) from exc

    async def _remove_quietly(self, repo_path: Path, workspace_path: Path) -> bool:
        try:
            await self.provider.remove(repo_path, workspace_path)
        except WorkspaceError:
            logger.warning(
                "Failed to remove workspace",
                extra={"workspace": str(workspace_path)},
                exc_info=True,
            )
            return False

        logger.info("Removed workspace", extra={"workspace": str(workspace_path)})
        return True

    def _to_handle(self, copy: WorkingCopy) -> WorkspaceHandle:
        try:
            modified = copy.path.stat().st_mtime
        except OSError:
            modified = time.time()
        return WorkspaceHandle(
            work_item_id=copy.path.name,
            path=copy.path,
            branch_name=copy.branch,
            created_at=datetime.fromtimestamp(modified, tz=timezone.utc),
        )
