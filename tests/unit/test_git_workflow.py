"""Tests for commit/push classification, PR creation and shared-checkout runs."""

from unittest.mock import MagicMock

import pytest

from agent_worker.core.git_workflow import (
    AUTO_PUSH_DISABLED_REASON,
    BOT_CO_AUTHOR,
    NO_CHANGES_REASON,
    PR_SERVICE_DISABLED_ERROR,
    GitWorkflow,
    build_commit_message,
    build_run_commit_message,
)
from agent_worker.integrations.github.pr_service import PrCreationError, PrResult
from agent_worker.utils.subprocess_utils import SubprocessError
from agent_worker.workspace.worktree_manager import WorktreeManager

from conftest import git


def _workflow(config, manager=None, pr_service=None, operator_login=None):
    return GitWorkflow(config, worktree_manager=manager, pr_service=pr_service, operator_login=operator_login)


@pytest.fixture
def manager(git_repo):
    return WorktreeManager(git_repo)


@pytest.fixture
def pr_service():
    service = MagicMock()
    service.create_pr.return_value = PrResult(url="https://github.com/acme/api/pull/7", number=7)
    service.create_consolidated_pr.return_value = PrResult(url="https://github.com/acme/api/pull/8", number=8)
    return service


class TestCommitMessages:
    def test_single_task(self, make_task):
        """Subject from the title, task and agent trailers, bot co-author."""
        message = build_commit_message(make_task("t-1", "Add /health"), "agent-0001")
        assert message == (
            "feat(agent): Add /health\n\n"
            "Task-ID: t-1\n"
            "Agent: agent-0001\n"
            f"Co-authored-by: {BOT_CO_AUTHOR}"
        )

    def test_operator_co_author(self, make_task):
        """The operator's GitHub login is credited when known."""
        message = build_commit_message(make_task(), "agent-0001", operator_login="octocat")
        assert message.endswith("Co-authored-by: octocat <octocat@users.noreply.github.com>")

    def test_run_message_lists_tasks(self, make_task):
        """A run commit lists every task and its id."""
        tasks = [make_task("t-1", "First"), make_task("t-2", "Second")]
        message = build_run_commit_message(tasks, "agent-0001")

        assert message.startswith("feat(agent): 2 tasks\n\n- First\n- Second\n")
        assert "Task-ID: t-1\nTask-ID: t-2" in message

    def test_run_message_single_task(self, make_task):
        """A run with one task uses the per-task message."""
        task = make_task()
        assert build_run_commit_message([task], "a") == build_commit_message(task, "a")


class TestCommitAndPush:
    def test_no_changes(self, make_config, git_repo, manager, make_task):
        """A clean worktree is classified as no-changes."""
        workflow = _workflow(make_config(git_repo, auto_push=True), manager)
        task = make_task()
        handle = workflow.create_task_worktree(task)

        result = workflow.commit_and_push(handle, task)

        assert result.no_changes is True
        assert result.skip_reason == NO_CHANGES_REASON
        assert result.branch is None
        assert not result.pushed

    def test_auto_push_disabled(self, make_config, git_repo, manager, make_task, bare_remote):
        """Without auto-push the commit stays on the local branch."""
        workflow = _workflow(make_config(git_repo, auto_push=False), manager)
        task = make_task()
        handle = workflow.create_task_worktree(task)
        (handle.path / "health.py").write_text("ok\n")

        result = workflow.commit_and_push(handle, task)

        assert result.branch == handle.branch
        assert result.pushed is False
        assert result.push_failed is False
        assert result.skip_reason == AUTO_PUSH_DISABLED_REASON
        assert handle.branch not in git(bare_remote, "branch", "--format=%(refname:short)")

    def test_pushed(self, make_config, git_repo, manager, make_task, bare_remote):
        """Changes are committed with trailers and pushed."""
        workflow = _workflow(make_config(git_repo, auto_push=True), manager)
        task = make_task("task-9", "Add endpoint")
        handle = workflow.create_task_worktree(task)
        (handle.path / "health.py").write_text("ok\n")

        result = workflow.commit_and_push(handle, task)

        assert result.pushed is True
        assert result.branch == "locus/task-9-add-endpoint"
        assert git(bare_remote, "rev-parse", f"refs/heads/{result.branch}") == result.commit_hash
        body = git(handle.path, "log", "-1", "--format=%B")
        assert "Task-ID: task-9" in body
        assert "Agent: agent-0001" in body

    def test_push_failure_keeps_local_branch(self, make_config, git_repo, manager, make_task):
        """A failed push reports the error and the local branch."""
        workflow = _workflow(make_config(git_repo, auto_push=True), manager)
        task = make_task()
        handle = workflow.create_task_worktree(task)
        (handle.path / "health.py").write_text("ok\n")
        git(git_repo, "remote", "remove", "origin")

        result = workflow.commit_and_push(handle, task)

        assert result.push_failed is True
        assert result.pushed is False
        assert result.branch == handle.branch
        assert result.push_error
        assert result.commit_hash

    def test_commit_failure(self, make_config, git_repo, make_task):
        """A git error while committing becomes a push failure without a branch."""
        manager = MagicMock()
        manager.commit_changes.side_effect = SubprocessError(cmd="git commit", returncode=128, stderr="index.lock exists")
        workflow = _workflow(make_config(git_repo, auto_push=True), manager)

        result = workflow.commit_and_push(MagicMock(), make_task())

        assert result.push_failed is True
        assert result.branch is None
        assert result.push_error.startswith("Git commit/push failed:")

    def test_worktrees_disabled(self, make_config, make_task):
        """Without a manager there is no worktree to create."""
        assert _workflow(make_config()).create_task_worktree(make_task()) is None


class TestCreatePullRequest:
    def test_without_service(self, make_config, make_task):
        """No PR service means a fixed error and no URL."""
        outcome = _workflow(make_config()).create_pull_request(make_task(), "locus/t-1-x")
        assert outcome.url is None
        assert outcome.error == PR_SERVICE_DISABLED_ERROR

    def test_success(self, make_config, make_task, pr_service):
        """The service's URL is returned."""
        task = make_task()
        outcome = _workflow(make_config(), pr_service=pr_service).create_pull_request(
            task, "locus/t-1-x", summary="Added it"
        )

        assert outcome.url == "https://github.com/acme/api/pull/7"
        assert outcome.error is None
        pr_service.create_pr.assert_called_once_with(
            task, "locus/t-1-x", "agent-0001", summary="Added it", base_branch=None
        )

    def test_failure(self, make_config, make_task, pr_service):
        """PR errors are captured, never raised."""
        pr_service.create_pr.side_effect = PrCreationError("gh pr create failed: HTTP 422")
        outcome = _workflow(make_config(), pr_service=pr_service).create_pull_request(make_task(), "b")
        assert outcome.url is None
        assert outcome.error == "gh pr create failed: HTTP 422"


class TestCleanup:
    def test_delete_branch(self, make_config, git_repo, manager, make_task):
        """keep_branch=False drops worktree and branch."""
        workflow = _workflow(make_config(git_repo), manager)
        handle = workflow.create_task_worktree(make_task())

        workflow.cleanup_worktree(handle.path, keep_branch=False)

        assert not handle.path.exists()
        assert handle.branch not in git(git_repo, "branch", "--format=%(refname:short)")

    def test_keep_branch(self, make_config, git_repo, manager, make_task):
        """keep_branch=True leaves the branch for follow-up."""
        workflow = _workflow(make_config(git_repo), manager)
        handle = workflow.create_task_worktree(make_task())

        workflow.cleanup_worktree(handle.path, keep_branch=True)

        assert not handle.path.exists()
        assert handle.branch in git(git_repo, "branch", "--format=%(refname:short)")

    def test_cleanup_errors_logged(self, make_config, caplog):
        """Removal errors are logged, not raised."""
        manager = MagicMock()
        manager.remove.side_effect = OSError("busy")
        _workflow(make_config(), manager).cleanup_worktree("/tmp/wt", keep_branch=False)
        assert "Could not clean up worktree" in caplog.text


class TestSharedRun:
    def test_fingerprint_detects_changes(self, make_config, git_repo):
        """The shared checkout fingerprint moves when files change."""
        workflow = _workflow(make_config(git_repo))
        before = workflow.shared_fingerprint()
        (git_repo / "new.txt").write_text("x")
        assert workflow.shared_fingerprint() != before

    def test_finalize_nothing_to_do(self, make_config, git_repo, pr_service):
        """No shared tasks means no branch and no PR."""
        outcome = _workflow(make_config(git_repo), pr_service=pr_service).finalize_shared_run([])
        assert outcome.url is None
        assert outcome.error is None
        pr_service.create_consolidated_pr.assert_not_called()

    def test_finalize_consolidated_pr(self, make_config, git_repo, bare_remote, make_task, pr_service):
        """Shared changes are committed on a run branch, pushed and proposed in one PR."""
        tasks = [make_task("t-1", "First"), make_task("t-2", "Second")]
        (git_repo / "first.txt").write_text("1")
        (git_repo / "second.txt").write_text("2")
        workflow = _workflow(make_config(git_repo, auto_push=True), pr_service=pr_service)

        outcome = workflow.finalize_shared_run(tasks, {"t-1": "did first"})

        assert outcome.url == "https://github.com/acme/api/pull/8"
        branch = git(git_repo, "rev-parse", "--abbrev-ref", "HEAD")
        assert branch.startswith("locus/run-agent-0001-")
        assert git(bare_remote, "rev-parse", f"refs/heads/{branch}") == git(git_repo, "rev-parse", "HEAD")
        pr_service.create_consolidated_pr.assert_called_once_with(
            tasks, branch, "agent-0001", summaries={"t-1": "did first"}, base_branch="main"
        )

    def test_finalize_without_changes(self, make_config, git_repo, make_task, pr_service):
        """A clean checkout produces no PR."""
        workflow = _workflow(make_config(git_repo, auto_push=True), pr_service=pr_service)
        outcome = workflow.finalize_shared_run([make_task()])
        assert outcome.error == NO_CHANGES_REASON
        pr_service.create_consolidated_pr.assert_not_called()

    def test_finalize_auto_push_disabled(self, make_config, git_repo, make_task, pr_service):
        """Without auto-push the run branch stays local."""
        (git_repo / "x.txt").write_text("x")
        workflow = _workflow(make_config(git_repo, auto_push=False), pr_service=pr_service)

        outcome = workflow.finalize_shared_run([make_task()])

        assert outcome.error == AUTO_PUSH_DISABLED_REASON
        assert git(git_repo, "status", "--porcelain") == ""
        pr_service.create_consolidated_pr.assert_not_called()
