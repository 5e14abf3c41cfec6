"""Agent worker: claims tasks, executes them in isolation and reports outcomes."""

import asyncio
import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import WorkerConfig
from .git_workflow import GitWorkflow
from .task import HeartbeatState, Task, TaskResult, TaskStatus
from .task_executor import TaskExecutor
from ..api.client import ApiClientError, NoTasksAvailable, WorkspaceApiClient
from ..integrations.github.pr_service import PrService
from ..runners.base import AgentRunner
from ..runners.factory import create_runner
from ..safeguards.retry import RetryPolicy, retry_async
from ..sandbox.lifecycle import SandboxLifecycle, SandboxMode, SandboxRegistry, detect_sandbox_support
from ..utils.rich_logging import ContextLogger
from ..utils.subprocess_utils import SubprocessError, check_command_exists
from ..workspace.worktree_manager import WorktreeError, WorktreeHandle, WorktreeManager

PUSH_FAILED_FALLBACK = "Git push failed before PR creation. Please retry manually."
NO_CHANGES_COMMENT = "⚠️ Agent execution finished with no file changes, so no commit/branch/PR was created."

# Seconds shutdown waits for the aborted task to unwind before cancelling it
SHUTDOWN_GRACE_SECONDS = 5.0


class Phase(str, Enum):
    """Where the worker is in its claim/execute/report cycle."""
    IDLE = "idle"
    DISPATCHING = "dispatching"
    CLAIMED = "claimed"
    ISOLATING = "isolating"
    EXECUTING = "executing"
    INTEGRATING = "integrating"
    REPORTING = "reporting"
    SHUTDOWN = "shutdown"


class WorkerStartupError(RuntimeError):
    """A prerequisite is missing; the worker exits before dispatching anything."""


class AgentWorker:
    """
    Drains tasks from the workspace API, one at a time.

    Each task is claimed, isolated in its own git worktree (or run on the
    shared checkout), executed by the configured AI CLI, committed, pushed,
    proposed as a PR and reported back as a status update plus a comment.
    A background heartbeat reports liveness independently of task progress.
    """

    def __init__(
        self,
        config: WorkerConfig,
        api_client: Optional[WorkspaceApiClient] = None,
        runner: Optional[AgentRunner] = None,
        git_workflow: Optional[GitWorkflow] = None,
        sandbox_registry: Optional[SandboxRegistry] = None,
        logger: Optional[ContextLogger] = None,
    ):
        self.config = config
        self.settings = config.settings
        self.logger = logger or ContextLogger(logging.getLogger(__name__), config.agent_id)
        self.api = api_client or WorkspaceApiClient(
            config.api_url, config.api_key, timeout_seconds=self.settings.request_timeout
        )
        self.sandbox_registry = sandbox_registry if sandbox_registry is not None else SandboxRegistry()
        self.runner = runner
        self.git = git_workflow
        self.executor: Optional[TaskExecutor] = None

        # Runtime toggle; prerequisites may switch worktrees off even when configured
        self.use_worktrees = config.use_worktrees

        self.phase = Phase.IDLE
        self.current_task_id: Optional[str] = None
        self.tasks_processed = 0
        self.tasks_completed = 0

        self._running = False
        self._shutting_down = False
        self._active_worktree: Optional[WorktreeHandle] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

        # Tasks completed on the shared checkout, integrated together at the end of the run
        self._shared_completed: List[Task] = []
        self._shared_summaries: Dict[str, str] = {}

    # --- phases ------------------------------------------------------------------

    def _set_phase(self, phase: Phase) -> None:
        self.phase = phase
        self.logger.phase_change(phase.value)

    # --- start-up ------------------------------------------------------------------

    async def _prepare(self) -> None:
        """
        Check prerequisites and build the collaborators not injected.

        Raises:
            WorkerStartupError: If sandboxing is requested but unsupported
        """
        if self.git is None:
            await self._build_git_workflow()

        if self.runner is None:
            lifecycle = None
            if self.config.use_sandbox:
                support = await asyncio.to_thread(detect_sandbox_support)
                if not support.available:
                    raise WorkerStartupError(f"Sandboxing requested but unavailable: {support.reason}")
                sandbox_settings = self.settings.sandbox
                lifecycle = SandboxLifecycle(
                    SandboxMode(sandbox_settings.mode),
                    self.config.project_path,
                    registry=self.sandbox_registry,
                    name=sandbox_settings.name,
                )
                self.logger.info(f"Sandbox isolation enabled ({sandbox_settings.mode})")
            self.runner = create_runner(self.config.provider, self.config.model, sandbox_lifecycle=lifecycle)

        if self.executor is None:
            self.executor = TaskExecutor(
                self.runner,
                self.config.project_path,
                provider=self.config.provider,
                model=self.config.model,
                on_progress=self.logger.progress,
            )

    async def _build_git_workflow(self) -> None:
        git_available = await asyncio.to_thread(check_command_exists, "git")
        if self.use_worktrees and not git_available:
            self.logger.error("git is not installed; worktree isolation disabled")
            self.use_worktrees = False

        pr_service = None
        operator_login = None
        if self.config.auto_push:
            if not await asyncio.to_thread(check_command_exists, "gh"):
                self.logger.warning("GitHub CLI (gh) not found; branches will be pushed but PRs cannot be opened")
            pr_service = PrService(self.config.project_path, github_token=self.settings.github_token)
            operator_login = await asyncio.to_thread(pr_service.get_operator_login)
            if operator_login:
                self.logger.info(f"Commits will be co-authored by {operator_login}")

        worktree_manager = None
        if self.use_worktrees:
            worktree_manager = WorktreeManager(
                self.config.project_path,
                root=self.config.worktree_root,
                branch_prefix=self.settings.branch_prefix,
                base_branch=self.settings.base_branch,
            )
        self.git = GitWorkflow(self.config, worktree_manager, pr_service, operator_login)

    async def _log_sprint(self) -> None:
        """Best-effort sprint lookup for the start-up banner."""
        try:
            if self.config.sprint_id:
                sprint = await self.api.get_sprint(self.config.sprint_id, self.config.workspace_id)
            else:
                sprint = await self.api.get_active_sprint(self.config.workspace_id)
        except ApiClientError as e:
            self.logger.warning(f"Could not load sprint: {e}")
            return
        if sprint:
            self.logger.info(f"Sprint: {sprint.name or sprint.id}")

    # --- heartbeat -----------------------------------------------------------------

    async def _send_heartbeat(self, state: Optional[HeartbeatState] = None) -> None:
        if state is None:
            state = HeartbeatState.WORKING if self.current_task_id else HeartbeatState.IDLE
        try:
            await self.api.send_heartbeat(
                self.config.workspace_id, self.config.agent_id, self.current_task_id, state
            )
        except ApiClientError as e:
            self.logger.warning(f"Heartbeat failed: {e}")

    async def _heartbeat_loop(self) -> None:
        """Beats immediately, then every heartbeat_interval until cancelled."""
        while True:
            await self._send_heartbeat()
            await asyncio.sleep(self.settings.heartbeat_interval)

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None

    # --- dispatch ------------------------------------------------------------------

    async def _get_next_task(self) -> Optional[Task]:
        """
        Claim the next task, retrying transient failures.

        Returns:
            The claimed task, or None when nothing is available or retries ran out
        """
        policy = RetryPolicy.fixed(self.settings.dispatch_max_attempts, self.settings.dispatch_retry_delay)
        try:
            return await retry_async(
                lambda: self.api.dispatch_next_task(
                    self.config.workspace_id, self.config.agent_id, self.config.sprint_id
                ),
                policy,
                is_retryable=lambda e: isinstance(e, ApiClientError) and not isinstance(e, NoTasksAvailable),
                description="Task dispatch",
            )
        except NoTasksAvailable:
            self.logger.info("No tasks available")
            return None
        except ApiClientError as e:
            self.logger.error(f"Giving up on dispatch after {policy.max_attempts} attempts: {e}")
            return None

    async def _load_task_detail(self, task: Task) -> Task:
        """Full task (comments included); the dispatched copy is used if the lookup fails."""
        try:
            return await self.api.get_task_detail(task.id, self.config.workspace_id)
        except ApiClientError as e:
            self.logger.warning(f"Could not load task detail, using dispatched copy: {e}")
            return task

    # --- per-task flow -------------------------------------------------------------

    async def _isolate(self, task: Task) -> Optional[WorktreeHandle]:
        if not self.use_worktrees:
            return None
        self._set_phase(Phase.ISOLATING)
        try:
            worktree = await asyncio.to_thread(self.git.create_task_worktree, task)
        except (WorktreeError, SubprocessError, ValueError) as e:
            self.logger.warning(f"Worktree creation failed, executing on the shared checkout instead: {e}")
            return None
        self._active_worktree = worktree
        return worktree

    async def _execute_task(self, task: Task) -> Optional[TaskResult]:
        """
        Isolate, execute and integrate one task.

        Returns:
            The outcome to report, or None when shutdown interrupted the task
        """
        worktree = await self._isolate(task)
        if self._shutting_down:
            return None

        fingerprint = None
        if worktree is None:
            fingerprint = await asyncio.to_thread(self.git.shared_fingerprint)

        self._set_phase(Phase.EXECUTING)
        result = await self.executor.execute(task, cwd=worktree.path if worktree else None)
        if self._shutting_down:
            return None

        if not result.success:
            await asyncio.to_thread(self._cleanup_after, worktree, result, False)
            return result

        self._set_phase(Phase.INTEGRATING)
        if worktree is None:
            return await self._integrate_shared(task, result, fingerprint)

        result, preserve = await self._integrate_worktree(task, result, worktree)
        await asyncio.to_thread(self._cleanup_after, worktree, result, preserve)
        return result

    async def _integrate_worktree(
        self, task: Task, result: TaskResult, worktree: WorktreeHandle
    ) -> Tuple[TaskResult, bool]:
        """Commit, push and open a PR. Second element: keep the worktree for manual recovery."""
        commit = await asyncio.to_thread(self.git.commit_and_push, worktree, task)

        if commit.no_changes:
            return TaskResult(success=True, summary=result.summary, no_changes=True), False

        if commit.push_failed:
            pr_error = commit.push_error or PUSH_FAILED_FALLBACK
            return TaskResult(success=True, summary=result.summary, branch=commit.branch, pr_error=pr_error), True

        pr_url = None
        pr_error = commit.skip_reason
        if commit.pushed and commit.branch:
            outcome = await asyncio.to_thread(
                self.git.create_pull_request, task, commit.branch, result.summary, worktree.base_branch
            )
            pr_url, pr_error = outcome.url, outcome.error

        preserve = commit.pushed and not pr_url
        return (
            TaskResult(success=True, summary=result.summary, branch=commit.branch, pr_url=pr_url, pr_error=pr_error),
            preserve,
        )

    async def _integrate_shared(self, task: Task, result: TaskResult, fingerprint: Optional[str]) -> TaskResult:
        after = await asyncio.to_thread(self.git.shared_fingerprint)
        if fingerprint is not None and after == fingerprint:
            return TaskResult(success=True, summary=result.summary, no_changes=True)
        self._shared_completed.append(task)
        self._shared_summaries[task.id] = result.summary
        return result

    def _cleanup_after(self, worktree: Optional[WorktreeHandle], result: TaskResult, preserve: bool) -> None:
        if worktree is None:
            return
        self._active_worktree = None
        if preserve:
            self.logger.warning(f"Preserving worktree for manual recovery: {worktree.path}")
            return
        self.git.cleanup_worktree(worktree.path, keep_branch=result.branch is not None)

    # --- reporting -----------------------------------------------------------------

    async def _report(self, task: Task, result: TaskResult) -> None:
        """Mirror the outcome to the task: status patch plus a comment."""
        self._set_phase(Phase.REPORTING)
        if result.no_changes:
            patch = {"status": TaskStatus.BLOCKED.value, "assignedTo": None}
            comment = f"{NO_CHANGES_COMMENT}\n\n{result.summary}"
        elif result.success:
            patch = {"status": TaskStatus.IN_REVIEW.value}
            if result.pr_url:
                patch["prUrl"] = result.pr_url
            comment = f"✅ {result.summary}"
            if result.branch:
                comment += f"\n\nBranch: `{result.branch}`"
            if result.pr_url:
                comment += f"\nPR: {result.pr_url}"
            if result.pr_error:
                comment += f"\nPR automation error: {result.pr_error}"
            self.tasks_completed += 1
        else:
            patch = {"status": TaskStatus.BACKLOG.value, "assignedTo": None}
            comment = f"❌ {result.summary}"

        try:
            await self.api.update_task_status(task.id, self.config.workspace_id, patch)
        except ApiClientError as e:
            self.logger.error(f"Failed to update status of task {task.id}: {e}")
        try:
            await self.api.add_task_comment(task.id, self.config.workspace_id, self.config.agent_id, comment)
        except ApiClientError as e:
            self.logger.error(f"Failed to comment on task {task.id}: {e}")

    # --- main loop -----------------------------------------------------------------

    async def _process(self, task: Task) -> bool:
        """Run one claimed task end to end. Returns False when shutdown interrupted it."""
        started = time.monotonic()
        self.current_task_id = task.id
        self.logger.task_started(task.id, task.title)
        self._set_phase(Phase.CLAIMED)
        await self._send_heartbeat()

        task = await self._load_task_detail(task)
        result = await self._execute_task(task)
        if result is None:
            return False

        await self._report(task, result)
        self.tasks_processed += 1
        self.current_task_id = None
        await self._send_heartbeat()

        if result.success:
            self.logger.task_completed(task.title, time.monotonic() - started)
        else:
            self.logger.task_failed(task.title, result.summary)
        return True

    async def _run_loop(self) -> int:
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        await self._log_sprint()

        while self._running and self.tasks_processed < self.settings.max_tasks:
            self._set_phase(Phase.DISPATCHING)
            task = await self._get_next_task()
            if task is None or self._shutting_down:
                break

            if not await self._process(task):
                break

            self._set_phase(Phase.IDLE)
            if self.use_worktrees and self.settings.post_cleanup_delay > 0:
                await asyncio.sleep(self.settings.post_cleanup_delay)

        if self._shutting_down:
            return 1

        if self.tasks_processed >= self.settings.max_tasks:
            self.logger.info(f"Reached the limit of {self.settings.max_tasks} tasks for this run")
        await self._finalize()
        return 0

    async def _finalize(self) -> None:
        """Integrate shared-checkout work, release sandboxes, send the final heartbeat."""
        if self._shared_completed:
            outcome = await asyncio.to_thread(
                self.git.finalize_shared_run, self._shared_completed, self._shared_summaries
            )
            if outcome.url:
                for task in self._shared_completed:
                    try:
                        await self.api.update_task_status(task.id, self.config.workspace_id, {"prUrl": outcome.url})
                    except ApiClientError as e:
                        self.logger.warning(f"Could not attach PR URL to task {task.id}: {e}")
                self.logger.info(f"Opened PR for {len(self._shared_completed)} task(s): {outcome.url}")
            elif outcome.error:
                self.logger.warning(f"Run changes were not proposed as a PR: {outcome.error}")

        await self._stop_heartbeat()
        await self.runner.close()
        await self.sandbox_registry.destroy_all()
        await self._send_heartbeat(HeartbeatState.COMPLETED)
        self.logger.info(
            f"Run finished: {self.tasks_completed} completed, {self.tasks_processed} processed"
        )

    async def run(self) -> int:
        """
        Drain tasks until none are left or the per-run cap is hit.

        Returns:
            Process exit code: 0 for a completed run, 1 for a startup error or shutdown
        """
        try:
            await self._prepare()
        except WorkerStartupError as e:
            self.logger.error(str(e))
            await self.api.aclose()
            return 1

        if self._shutdown_task is not None:
            # Signal arrived during start-up: never claim a task
            return await self._shutdown_task

        self._running = True
        self.logger.info(
            f"🚀 Agent worker started (workspace={self.config.workspace_id}, "
            f"provider={self.config.provider.value}, worktrees={self.use_worktrees}, "
            f"sandbox={self.config.use_sandbox}, auto_push={self.config.auto_push})"
        )

        self._loop_task = asyncio.create_task(self._run_loop())
        try:
            exit_code = await self._loop_task
        except asyncio.CancelledError:
            if self._shutdown_task is None:
                raise
            exit_code = 1
        finally:
            self._running = False

        if self._shutdown_task is not None:
            return await self._shutdown_task

        await self.api.aclose()
        return exit_code

    # --- shutdown ------------------------------------------------------------------

    def request_shutdown(self, reason: str = "signal") -> None:
        """Signal-handler entry point; schedules handle_shutdown once."""
        if self._shutdown_task is not None:
            return
        self._shutdown_task = asyncio.get_running_loop().create_task(self.handle_shutdown(reason))

    async def handle_shutdown(self, reason: str = "signal") -> int:
        """
        Forced stop: abort the agent, stop the heartbeat, discard the active
        worktree together with its branch and destroy every sandbox.

        Returns:
            Exit code 1
        """
        self._shutting_down = True
        self._running = False
        self._set_phase(Phase.SHUTDOWN)
        self.logger.warning(f"Received {reason}, shutting down")

        if self.runner is not None:
            self.runner.abort()
        await self._stop_heartbeat()

        if self._loop_task is not None and not self._loop_task.done():
            await asyncio.wait({self._loop_task}, timeout=SHUTDOWN_GRACE_SECONDS)
            if not self._loop_task.done():
                self._loop_task.cancel()

        worktree = self._active_worktree
        self._active_worktree = None
        if worktree is not None and self.git is not None:
            await asyncio.to_thread(self.git.cleanup_worktree, worktree.path, False)

        await self.sandbox_registry.destroy_all()
        await self.api.aclose()
        return 1
