"""Git worktree manager for per-task agent isolation.

Each task gets its own worktree on a dedicated branch under the worktree
root, so an agent's file changes never collide with the user's checkout
or with another task.
"""

import hashlib
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..utils.subprocess_utils import SubprocessError, run_git_command
from ..utils.text import slugify
from ..utils.validators import validate_branch_name, validate_identifier

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "locus"
DEFAULT_ROOT_DIRNAME = ".locus-worktrees"
PUSH_TIMEOUT_SECONDS = 120

_NON_FAST_FORWARD_MARKERS = ("non-fast-forward", "[rejected]", "fetch first")
_MISSING_DIRECTORY_MARKERS = ("cannot create directory", "No such file or directory")


class WorktreeError(RuntimeError):
    """Worktree creation, removal or push failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


@dataclass(frozen=True)
class WorktreeHandle:
    """A created task worktree."""
    path: Path
    branch: str
    base_branch: str
    base_commit_hash: str


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""
    path: Path
    branch: str
    head: str
    is_main: bool = False
    is_prunable: bool = False


class WorktreeManager:
    """Creates, commits in, pushes and removes task worktrees of one repository."""

    def __init__(
        self,
        project_path: Path,
        root: Optional[Path] = None,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        base_branch: Optional[str] = None,
    ):
        """
        Initialize worktree manager.

        Args:
            project_path: Main checkout of the repository
            root: Directory holding task worktrees (default ``<project>/.locus-worktrees``)
            branch_prefix: Prefix for task branches
            base_branch: Branch new worktrees start from (default: the project's current branch)
        """
        self.project_path = Path(project_path).resolve()
        self.root = Path(root).resolve() if root else self.project_path / DEFAULT_ROOT_DIRNAME
        self.branch_prefix = branch_prefix
        self.base_branch = base_branch

    def _run_git(self, args: List[str], cwd: Optional[Path] = None, check: bool = True, timeout: int = 30):
        return run_git_command(args, cwd=cwd or self.project_path, check=check, timeout=timeout)

    def _git_output(self, args: List[str], cwd: Optional[Path] = None) -> str:
        return self._run_git(args, cwd=cwd).stdout.strip()

    # --- naming ----------------------------------------------------------------

    def build_branch_name(self, task_id: str, title: str) -> str:
        """``<prefix>/<task-id>-<slug>``, slug capped at 40 characters."""
        slug = slugify(title) or "task"
        return validate_branch_name(f"{self.branch_prefix}/{task_id}-{slug}")

    def worktree_path(self, agent_id: str, task_id: str) -> Path:
        agent_id = validate_identifier(agent_id, "agent_id")
        task_id = validate_identifier(task_id, "task_id")
        return self.root / f"{agent_id}-{task_id}"

    # --- creation ----------------------------------------------------------------

    def create(self, task_id: str, title: str, agent_id: str) -> WorktreeHandle:
        """
        Create an isolated worktree on a new task branch.

        A leftover worktree directory or branch from an earlier run of the
        same task is removed first.

        Raises:
            ValueError: If the task or agent id cannot be used in a path
            WorktreeError: If git refuses to create the worktree
        """
        branch = self.build_branch_name(task_id, title)
        path = self.worktree_path(agent_id, task_id)
        self._ensure_root()

        base_branch = self.base_branch or self.current_branch()
        if not self._branch_exists(base_branch):
            self._fetch_base_branch(base_branch)

        logger.info(f"Creating worktree {path.name} (branch: {branch}, base: {base_branch})")

        if path.exists():
            logger.warning(f"Removing stale worktree directory: {path}")
            self._discard_worktree_dir(path)

        if self._branch_exists(branch):
            self._delete_stale_branch(branch)

        add_args = ["worktree", "add", str(path), "-b", branch, base_branch]
        try:
            self._run_git(add_args)
        except SubprocessError as e:
            if not any(marker in e.stderr for marker in _MISSING_DIRECTORY_MARKERS):
                raise WorktreeError(f"Failed to create worktree {path}: {e.stderr.strip()}", e.stderr) from e
            logger.warning(f"Worktree creation failed due to missing directories, retrying after prune: {path}")
            self._cleanup_failed_worktree(path, branch)
            self._ensure_root()
            try:
                self._run_git(add_args)
            except SubprocessError as retry_error:
                raise WorktreeError(
                    f"Failed to create worktree {path}: {retry_error.stderr.strip()}", retry_error.stderr
                ) from retry_error

        base_commit_hash = self._git_output(["rev-parse", "HEAD"], cwd=path)
        logger.info(f"Worktree created at {path} (base: {base_commit_hash[:8]})")
        return WorktreeHandle(path=path, branch=branch, base_branch=base_branch, base_commit_hash=base_commit_hash)

    def _ensure_root(self) -> None:
        if self.root.exists() and not self.root.is_dir():
            raise WorktreeError(f"Worktree root exists but is not a directory: {self.root}")
        self.root.mkdir(parents=True, exist_ok=True)
        # Keep task worktrees out of the main checkout's status
        ignore_file = self.root / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n")

    def _fetch_base_branch(self, base_branch: str) -> None:
        logger.info(f"Base branch '{base_branch}' not found locally, fetching from origin")
        try:
            self._run_git(["fetch", "origin", base_branch], timeout=PUSH_TIMEOUT_SECONDS)
            self._run_git(["branch", base_branch, f"origin/{base_branch}"])
        except SubprocessError as e:
            logger.warning(f"Could not fetch base branch '{base_branch}': {e.stderr.strip()}")

    def _delete_stale_branch(self, branch: str) -> None:
        logger.warning(f"Deleting existing branch: {branch}")
        for info in self.list():
            if info.branch != branch:
                continue
            if info.is_main or not self._is_managed_path(info.path):
                raise WorktreeError(
                    f"Branch '{branch}' is checked out at '{info.path}'. "
                    f"Remove or detach that worktree before retrying."
                )
            self.remove(info.path, delete_branch=False)

        result = self._run_git(["branch", "-D", branch], check=False)
        if result.returncode != 0:
            self.prune()
            self._run_git(["branch", "-D", branch])

    def _cleanup_failed_worktree(self, path: Path, branch: str) -> None:
        self._discard_worktree_dir(path)
        if self._branch_exists(branch):
            self._run_git(["branch", "-D", branch], check=False)

    def _discard_worktree_dir(self, path: Path) -> None:
        result = self._run_git(["worktree", "remove", str(path), "--force"], check=False)
        if result.returncode != 0:
            if path.exists():
                shutil.rmtree(path)
            self._run_git(["worktree", "prune"], check=False)

    # --- inspection --------------------------------------------------------------

    def list(self) -> List[WorktreeInfo]:
        """Parse ``git worktree list --porcelain``, main worktree included."""
        output = self._git_output(["worktree", "list", "--porcelain"])
        worktrees = []
        for block in output.split("\n\n"):
            if not block.strip():
                continue
            path, head, branch = "", "", ""
            is_main, is_prunable = False, False
            for line in block.strip().splitlines():
                if line.startswith("worktree "):
                    path = line[len("worktree "):]
                elif line.startswith("HEAD "):
                    head = line[len("HEAD "):]
                elif line.startswith("branch "):
                    branch = line[len("branch "):].replace("refs/heads/", "", 1)
                elif line == "bare":
                    is_main = True
                elif line.startswith("prunable"):
                    is_prunable = True
                elif line == "detached":
                    branch = "(detached)"
            if not path:
                continue
            resolved = Path(path).resolve()
            worktrees.append(WorktreeInfo(
                path=resolved,
                branch=branch,
                head=head,
                is_main=is_main or resolved == self.project_path,
                is_prunable=is_prunable,
            ))
        return worktrees

    def list_agent_worktrees(self) -> List[WorktreeInfo]:
        """Worktrees under the task root; worktrees the user made elsewhere are left alone."""
        return [wt for wt in self.list() if not wt.is_main and wt.path.is_relative_to(self.root)]

    def get_branch(self, worktree_path: Path) -> str:
        return self._git_output(["rev-parse", "--abbrev-ref", "HEAD"], cwd=Path(worktree_path))

    def current_branch(self) -> str:
        return self.get_branch(self.project_path)

    def has_changes(self, worktree_path: Path) -> bool:
        return bool(self._git_output(["status", "--porcelain"], cwd=Path(worktree_path)))

    def change_fingerprint(self, worktree_path: Path) -> str:
        """Digest of HEAD, tracked changes and untracked files; equal digests mean nothing changed."""
        worktree_path = Path(worktree_path)
        digest = hashlib.sha256()
        for args in (
            ["rev-parse", "HEAD"],
            ["diff", "HEAD", "--binary"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            digest.update(self._run_git(args, cwd=worktree_path).stdout.encode())
        return digest.hexdigest()

    def _branch_exists(self, branch_name: str) -> bool:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"], check=False)
        return result.returncode == 0

    def _is_managed_path(self, path: Path) -> bool:
        try:
            Path(path).resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def _head_moved(self, worktree_path: Path, base_branch: Optional[str], base_commit_hash: Optional[str]) -> bool:
        if base_branch:
            result = self._run_git(["rev-list", "--count", f"{base_branch}..HEAD"], cwd=worktree_path, check=False)
            if result.returncode == 0 and result.stdout.strip().isdigit():
                if int(result.stdout.strip()) > 0:
                    return True
            else:
                logger.warning(f"Could not compare HEAD against base branch '{base_branch}'")
        if base_commit_hash:
            return self._git_output(["rev-parse", "HEAD"], cwd=worktree_path) != base_commit_hash
        return False

    # --- integration -------------------------------------------------------------

    def commit_changes(
        self,
        worktree_path: Path,
        message: str,
        base_branch: Optional[str] = None,
        base_commit_hash: Optional[str] = None,
    ) -> Optional[str]:
        """
        Stage everything and commit.

        Returns:
            The commit hash, or None when there is nothing to commit. When the
            tree is clean but the agent already committed on its own (HEAD moved
            past the base), the existing HEAD hash is returned.

        Raises:
            SubprocessError: If git fails for any other reason
        """
        worktree_path = Path(worktree_path)

        if not self.has_changes(worktree_path):
            if self._head_moved(worktree_path, base_branch, base_commit_hash):
                head = self._git_output(["rev-parse", "HEAD"], cwd=worktree_path)
                logger.info(f"Agent already committed changes ({head[:8]}); skipping additional commit")
                return head
            logger.warning(
                f"No changes detected in {worktree_path} "
                f"(base: {base_branch or 'none'}, base commit: {(base_commit_hash or 'none')[:8]})"
            )
            return None

        self._run_git(["add", "-A"], cwd=worktree_path)
        staged = self._git_output(["diff", "--cached", "--name-only"], cwd=worktree_path)
        if not staged:
            logger.warning("All changes were ignored by .gitignore, nothing to commit")
            return None

        logger.info(f"Committing {len(staged.splitlines())} file(s)")
        self._run_git(["commit", "-m", message], cwd=worktree_path)
        head = self._git_output(["rev-parse", "HEAD"], cwd=worktree_path)
        logger.info(f"Committed: {head[:8]}")
        return head

    def push_branch(self, worktree_path: Path, remote: str = "origin") -> str:
        """
        Push the worktree's branch, retrying once with --force-with-lease on a
        non-fast-forward rejection.

        Returns:
            The pushed branch name

        Raises:
            WorktreeError: With git's stderr when the push fails
        """
        worktree_path = Path(worktree_path)
        branch = self.get_branch(worktree_path)
        logger.info(f"Pushing branch {branch} to {remote}")

        try:
            self._run_git(["push", "-u", remote, branch], cwd=worktree_path, timeout=PUSH_TIMEOUT_SECONDS)
            return branch
        except SubprocessError as e:
            if not any(marker in e.stderr for marker in _NON_FAST_FORWARD_MARKERS):
                raise WorktreeError(f"Failed to push {branch}: {e.stderr.strip() or e}", e.stderr) from e

        logger.warning(f"Push rejected for {branch} (non-fast-forward), retrying with --force-with-lease")
        self._run_git(["fetch", remote, branch], cwd=worktree_path, check=False, timeout=PUSH_TIMEOUT_SECONDS)
        try:
            self._run_git(
                ["push", "--force-with-lease", "-u", remote, branch],
                cwd=worktree_path,
                timeout=PUSH_TIMEOUT_SECONDS,
            )
        except SubprocessError as e:
            raise WorktreeError(f"Failed to push {branch}: {e.stderr.strip() or e}", e.stderr) from e
        logger.info(f"Pushed {branch} to {remote} with --force-with-lease")
        return branch

    def checkout_new_branch(self, branch: str, cwd: Optional[Path] = None) -> str:
        """Create and switch to ``branch`` in ``cwd`` (the main checkout by default)."""
        branch = validate_branch_name(branch)
        self._run_git(["checkout", "-b", branch], cwd=cwd)
        return branch

    # --- cleanup -------------------------------------------------------------------

    def remove(self, worktree_path: Path, delete_branch: bool = True) -> None:
        """
        Remove a worktree and optionally its branch.

        The working copy is always removed; the branch is kept when
        ``delete_branch`` is False so committed work survives.
        """
        path = Path(worktree_path).resolve()
        branch = next((wt.branch for wt in self.list() if wt.path == path), None)

        logger.info(f"Removing worktree: {path}")
        self._discard_worktree_dir(path)

        if delete_branch and branch and not branch.startswith("("):
            result = self._run_git(["branch", "-D", branch], check=False)
            if result.returncode == 0:
                logger.info(f"Deleted branch: {branch}")
            else:
                logger.warning(f"Could not delete branch {branch} (may already be deleted)")

    def prune(self) -> int:
        """Drop git's records of worktrees whose directories are gone."""
        before = sum(1 for wt in self.list_agent_worktrees() if wt.is_prunable)
        self._run_git(["worktree", "prune"])
        after = sum(1 for wt in self.list_agent_worktrees() if wt.is_prunable)
        pruned = before - after
        if pruned > 0:
            logger.info(f"Pruned {pruned} stale worktree(s)")
        return pruned

    def remove_all(self) -> int:
        """Remove every agent worktree and its branch; the main checkout is untouched."""
        removed = 0
        for wt in self.list_agent_worktrees():
            try:
                self.remove(wt.path, delete_branch=True)
                removed += 1
            except (SubprocessError, OSError) as e:
                logger.warning(f"Failed to remove worktree {wt.path}: {e}")

        if self.root.exists() and all(p.name == ".gitignore" for p in self.root.iterdir()):
            shutil.rmtree(self.root)
        return removed
