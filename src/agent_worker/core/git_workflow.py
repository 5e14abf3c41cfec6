"""Git side of task execution.

Worktree acquisition, commit and push with outcome classification, pull
request creation and cleanup. Everything here is synchronous; the worker
runs it off the event loop.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .config import WorkerConfig
from .task import CommitPushResult, Task
from ..integrations.github.pr_service import PrCreationError, PrService
from ..utils.subprocess_utils import SubprocessError
from ..workspace.worktree_manager import WorktreeError, WorktreeHandle, WorktreeManager

logger = logging.getLogger(__name__)

BOT_CO_AUTHOR = "LocusAI <noreply@locusai.dev>"

NO_CHANGES_REASON = "No changes were committed, so no branch was pushed."
AUTO_PUSH_DISABLED_REASON = "Auto-push is disabled, so PR creation was skipped."
PR_SERVICE_DISABLED_ERROR = "PR service is not initialized. Enable auto-push to allow PR creation."


def build_commit_message(task: Task, agent_id: str, operator_login: Optional[str] = None) -> str:
    """Conventional commit subject plus traceability trailers."""
    trailers = [
        f"Task-ID: {task.id}",
        f"Agent: {agent_id}",
        f"Co-authored-by: {BOT_CO_AUTHOR}",
    ]
    if operator_login:
        trailers.append(f"Co-authored-by: {operator_login} <{operator_login}@users.noreply.github.com>")
    return f"feat(agent): {task.title}\n\n" + "\n".join(trailers)


def build_run_commit_message(tasks: List[Task], agent_id: str, operator_login: Optional[str] = None) -> str:
    if len(tasks) == 1:
        return build_commit_message(tasks[0], agent_id, operator_login)
    lines = [f"feat(agent): {len(tasks)} tasks", ""]
    lines.extend(f"- {task.title}" for task in tasks)
    lines.append("")
    lines.extend(f"Task-ID: {task.id}" for task in tasks)
    lines.append(f"Agent: {agent_id}")
    lines.append(f"Co-authored-by: {BOT_CO_AUTHOR}")
    if operator_login:
        lines.append(f"Co-authored-by: {operator_login} <{operator_login}@users.noreply.github.com>")
    return "\n".join(lines)


@dataclass(frozen=True)
class PullRequestOutcome:
    """PR URL on success, error text otherwise. Never both."""
    url: Optional[str] = None
    error: Optional[str] = None


class GitWorkflow:
    """Version-control integration for one worker."""

    def __init__(
        self,
        config: WorkerConfig,
        worktree_manager: Optional[WorktreeManager] = None,
        pr_service: Optional[PrService] = None,
        operator_login: Optional[str] = None,
    ):
        self.config = config
        self.worktree_manager = worktree_manager
        self.pr_service = pr_service
        self.operator_login = operator_login

    @property
    def project_path(self) -> Path:
        return self.config.project_path

    # --- per-task worktrees --------------------------------------------------------

    def create_task_worktree(self, task: Task) -> Optional[WorktreeHandle]:
        """
        Create the task's worktree, or return None when worktrees are disabled.

        Raises:
            WorktreeError, SubprocessError, ValueError: If creation fails; the
                caller decides whether to fall back to the shared checkout
        """
        if self.worktree_manager is None:
            return None
        handle = self.worktree_manager.create(task.id, task.title, self.config.agent_id)
        logger.info(f"Worktree created: {handle.path} ({handle.branch})")
        return handle

    def commit_and_push(self, worktree: WorktreeHandle, task: Task) -> CommitPushResult:
        """
        Commit the worktree's changes and push the branch when auto-push is on.

        The result distinguishes no-changes, push-failed, push-skipped and
        pushed outcomes; git errors never propagate.
        """
        if self.worktree_manager is None:
            return CommitPushResult()

        try:
            commit_hash = self.worktree_manager.commit_changes(
                worktree.path,
                build_commit_message(task, self.config.agent_id, self.operator_login),
                worktree.base_branch,
                worktree.base_commit_hash,
            )
            if not commit_hash:
                logger.info("No changes to commit for this task")
                return CommitPushResult(no_changes=True, skip_reason=NO_CHANGES_REASON)

            local_branch = self.worktree_manager.get_branch(worktree.path)
        except (SubprocessError, WorktreeError) as e:
            logger.error(f"Git commit failed: {e}")
            return CommitPushResult(push_failed=True, push_error=f"Git commit/push failed: {e}")

        if not self.config.auto_push:
            logger.info("Auto-push disabled; skipping branch push")
            return CommitPushResult(
                branch=local_branch, commit_hash=commit_hash, skip_reason=AUTO_PUSH_DISABLED_REASON
            )

        try:
            branch = self.worktree_manager.push_branch(worktree.path)
        except (SubprocessError, WorktreeError) as e:
            logger.error(f"Git push failed: {e}")
            return CommitPushResult(
                branch=local_branch, commit_hash=commit_hash, push_failed=True, push_error=str(e)
            )
        return CommitPushResult(branch=branch, pushed=True, commit_hash=commit_hash)

    def create_pull_request(
        self,
        task: Task,
        branch: str,
        summary: Optional[str] = None,
        base_branch: Optional[str] = None,
    ) -> PullRequestOutcome:
        """Open a PR for a pushed branch. Failures come back as an error string."""
        if self.pr_service is None:
            logger.warning(f"PR creation skipped: {PR_SERVICE_DISABLED_ERROR}")
            return PullRequestOutcome(error=PR_SERVICE_DISABLED_ERROR)

        logger.info(f"Attempting PR creation from branch: {branch}")
        try:
            result = self.pr_service.create_pr(
                task, branch, self.config.agent_id, summary=summary, base_branch=base_branch
            )
        except (PrCreationError, SubprocessError) as e:
            logger.error(f"PR creation failed: {e}")
            return PullRequestOutcome(error=str(e))
        return PullRequestOutcome(url=result.url)

    def cleanup_worktree(self, worktree_path: Optional[Path], keep_branch: bool) -> None:
        """Remove a task worktree; the branch survives when ``keep_branch`` is set."""
        if self.worktree_manager is None or worktree_path is None:
            return
        try:
            self.worktree_manager.remove(worktree_path, delete_branch=not keep_branch)
        except (SubprocessError, OSError) as e:
            logger.warning(f"Could not clean up worktree {worktree_path}: {e}")
            return
        logger.info("Worktree cleaned up (branch preserved)" if keep_branch else "Worktree cleaned up")

    # --- shared checkout -----------------------------------------------------------

    def shared_fingerprint(self) -> Optional[str]:
        """Change digest of the project checkout, or None when it cannot be read."""
        manager = self.worktree_manager or WorktreeManager(self.project_path)
        try:
            return manager.change_fingerprint(self.project_path)
        except SubprocessError as e:
            logger.warning(f"Could not inspect {self.project_path}: {e}")
            return None

    def finalize_shared_run(
        self,
        tasks: List[Task],
        summaries: Optional[Dict[str, str]] = None,
    ) -> PullRequestOutcome:
        """
        Integrate tasks completed directly on the project checkout.

        Everything they changed is committed on one run branch, pushed, and
        proposed in a single consolidated PR.
        """
        if not tasks:
            return PullRequestOutcome()

        manager = self.worktree_manager or WorktreeManager(
            self.project_path, branch_prefix=self.config.settings.branch_prefix
        )
        branch = f"{self.config.settings.branch_prefix}/run-{self.config.agent_id}-{int(time.time())}"
        try:
            base_branch = self.config.settings.base_branch or manager.current_branch()
            manager.checkout_new_branch(branch, cwd=self.project_path)
            commit_hash = manager.commit_changes(
                self.project_path,
                build_run_commit_message(tasks, self.config.agent_id, self.operator_login),
                base_branch,
            )
        except (SubprocessError, WorktreeError, ValueError) as e:
            logger.error(f"Could not commit run changes: {e}")
            return PullRequestOutcome(error=f"Git commit failed: {e}")

        if not commit_hash:
            logger.info("Run produced no changes on the shared checkout")
            return PullRequestOutcome(error=NO_CHANGES_REASON)

        if not self.config.auto_push:
            logger.info(f"Auto-push disabled; run branch {branch} left local")
            return PullRequestOutcome(error=AUTO_PUSH_DISABLED_REASON)

        try:
            manager.push_branch(self.project_path)
        except (SubprocessError, WorktreeError) as e:
            logger.error(f"Git push failed: {e}")
            return PullRequestOutcome(error=str(e))

        if self.pr_service is None:
            return PullRequestOutcome(error=PR_SERVICE_DISABLED_ERROR)
        try:
            result = self.pr_service.create_consolidated_pr(
                tasks, branch, self.config.agent_id, summaries=summaries, base_branch=base_branch
            )
        except (PrCreationError, SubprocessError) as e:
            logger.error(f"Consolidated PR creation failed: {e}")
            return PullRequestOutcome(error=str(e))
        return PullRequestOutcome(url=result.url)
