"""Tests for WorktreeManager against a real repository and bare remote."""

import shutil

import pytest

from agent_worker.workspace.worktree_manager import WorktreeError, WorktreeManager

from conftest import git


@pytest.fixture
def manager(git_repo):
    return WorktreeManager(git_repo)


def _branches(repo):
    return git(repo, "branch", "--format=%(refname:short)").splitlines()


class TestNaming:
    def test_branch_name(self, manager):
        """Branches are <prefix>/<task-id>-<slug>."""
        assert manager.build_branch_name("task-1", "Add health check endpoint") == "locus/task-1-add-health-check-endpoint"

    def test_slug_capped(self, manager):
        """Long titles are shortened to a 40 character slug."""
        branch = manager.build_branch_name("t1", "word " * 30)
        slug = branch.split("/", 1)[1][len("t1-"):]
        assert len(slug) <= 40

    def test_empty_slug(self, manager):
        """A title with no usable characters still yields a branch."""
        assert manager.build_branch_name("t1", "!!!") == "locus/t1-task"

    def test_unsafe_ids_rejected(self, manager):
        """Path-unsafe ids never reach the filesystem."""
        with pytest.raises(ValueError):
            manager.worktree_path("agent-1", "../escape")


class TestCreate:
    def test_create_worktree(self, manager, git_repo):
        """A worktree is created on a new branch from the current branch."""
        handle = manager.create("task-1", "Add health check endpoint", "agent-0001")

        assert handle.path == git_repo.resolve() / ".locus-worktrees" / "agent-0001-task-1"
        assert handle.path.is_dir()
        assert handle.branch == "locus/task-1-add-health-check-endpoint"
        assert handle.base_branch == "main"
        assert handle.base_commit_hash == git(git_repo, "rev-parse", "main")
        assert manager.get_branch(handle.path) == handle.branch

    def test_root_is_gitignored(self, manager, git_repo):
        """The worktree root never shows up in the main checkout's status."""
        manager.create("task-1", "x", "agent-0001")
        assert (git_repo / ".locus-worktrees" / ".gitignore").read_text() == "*\n"
        assert git(git_repo, "status", "--porcelain") == ""

    def test_recreate_replaces_stale(self, manager):
        """Creating the same task twice replaces the leftover worktree and branch."""
        first = manager.create("task-1", "x", "agent-0001")
        (first.path / "leftover.txt").write_text("stale")

        second = manager.create("task-1", "x", "agent-0001")

        assert second.path == first.path
        assert not (second.path / "leftover.txt").exists()

    def test_branch_checked_out_elsewhere(self, manager, git_repo):
        """A branch checked out in the main checkout is never deleted."""
        git(git_repo, "checkout", "-q", "-b", "locus/task-1-x")
        with pytest.raises(WorktreeError, match="is checked out at"):
            manager.create("task-1", "x", "agent-0001")

    def test_custom_root(self, git_repo, tmp_path):
        """Worktrees can live outside the project."""
        manager = WorktreeManager(git_repo, root=tmp_path / "wt")
        handle = manager.create("task-1", "x", "agent-0001")
        assert handle.path == (tmp_path / "wt" / "agent-0001-task-1").resolve()


class TestCommitAndPush:
    def test_commit_without_changes(self, manager):
        """A clean worktree produces no commit."""
        handle = manager.create("task-1", "x", "agent-0001")
        assert manager.commit_changes(handle.path, "msg", handle.base_branch, handle.base_commit_hash) is None

    def test_commit_with_changes(self, manager):
        """New files are staged and committed."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "health.py").write_text("def health():\n    return 'ok'\n")

        commit = manager.commit_changes(handle.path, "Add health", handle.base_branch, handle.base_commit_hash)

        assert commit == git(handle.path, "rev-parse", "HEAD")
        assert git(handle.path, "log", "-1", "--format=%s") == "Add health"
        assert not manager.has_changes(handle.path)

    def test_agent_commit_detected(self, manager):
        """A commit made by the agent itself is picked up without a new commit."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "a.txt").write_text("a")
        git(handle.path, "add", "a.txt")
        git(handle.path, "commit", "-q", "-m", "agent commit")
        head = git(handle.path, "rev-parse", "HEAD")

        assert manager.commit_changes(handle.path, "msg", handle.base_branch, handle.base_commit_hash) == head
        assert git(handle.path, "log", "-1", "--format=%s") == "agent commit"

    def test_ignored_changes_only(self, manager):
        """Files matched by .gitignore do not count as changes."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / ".gitignore").write_text("*.log\n")
        git(handle.path, "add", ".gitignore")
        git(handle.path, "commit", "-q", "-m", "ignore logs")
        (handle.path / "debug.log").write_text("noise")

        assert manager.has_changes(handle.path) is False

    def test_push(self, manager, bare_remote):
        """The task branch lands on the remote."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "a.txt").write_text("a")
        commit = manager.commit_changes(handle.path, "msg")

        assert manager.push_branch(handle.path) == handle.branch
        assert git(bare_remote, "rev-parse", f"refs/heads/{handle.branch}") == commit

    def test_push_failure(self, manager, git_repo):
        """A push to a missing remote raises WorktreeError with stderr."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "a.txt").write_text("a")
        manager.commit_changes(handle.path, "msg")
        git(git_repo, "remote", "set-url", "origin", str(git_repo.parent / "missing.git"))

        with pytest.raises(WorktreeError) as exc_info:
            manager.push_branch(handle.path)
        assert exc_info.value.stderr

    def test_push_rejected_retries_with_lease(self, manager, bare_remote, tmp_path):
        """A non-fast-forward rejection is retried with --force-with-lease."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "a.txt").write_text("a")
        manager.commit_changes(handle.path, "first")
        manager.push_branch(handle.path)

        # Someone else pushes to the same branch
        other = tmp_path / "other"
        git(tmp_path, "clone", "-q", "-b", handle.branch, str(bare_remote), str(other))
        git(other, "config", "user.email", "o@example.com")
        git(other, "config", "user.name", "Other")
        (other / "b.txt").write_text("b")
        git(other, "add", "b.txt")
        git(other, "commit", "-q", "-m", "other")
        git(other, "push", "-q", "origin", handle.branch)

        git(handle.path, "commit", "-q", "--amend", "-m", "rewritten")
        assert manager.push_branch(handle.path) == handle.branch
        assert git(bare_remote, "rev-parse", f"refs/heads/{handle.branch}") == git(handle.path, "rev-parse", "HEAD")


class TestFingerprint:
    def test_unchanged(self, manager, git_repo):
        """Two fingerprints of an untouched checkout are equal."""
        assert manager.change_fingerprint(git_repo) == manager.change_fingerprint(git_repo)

    def test_untracked_file(self, manager, git_repo):
        """A new untracked file changes the fingerprint."""
        before = manager.change_fingerprint(git_repo)
        (git_repo / "new.txt").write_text("x")
        assert manager.change_fingerprint(git_repo) != before

    def test_tracked_edit(self, manager, git_repo):
        """Editing a tracked file changes the fingerprint."""
        before = manager.change_fingerprint(git_repo)
        (git_repo / "README.md").write_text("# Changed\n")
        assert manager.change_fingerprint(git_repo) != before


class TestRemove:
    def test_remove_deletes_branch(self, manager, git_repo):
        """By default the working copy and its branch both go."""
        handle = manager.create("task-1", "x", "agent-0001")
        manager.remove(handle.path)

        assert not handle.path.exists()
        assert handle.branch not in _branches(git_repo)

    def test_remove_keeps_branch(self, manager, git_repo):
        """delete_branch=False keeps committed work on its branch."""
        handle = manager.create("task-1", "x", "agent-0001")
        (handle.path / "a.txt").write_text("a")
        manager.commit_changes(handle.path, "msg")

        manager.remove(handle.path, delete_branch=False)

        assert not handle.path.exists()
        assert handle.branch in _branches(git_repo)

    def test_list_and_remove_all(self, manager, git_repo):
        """remove_all removes agent worktrees and leaves the main checkout."""
        manager.create("task-1", "x", "agent-0001")
        manager.create("task-2", "y", "agent-0001")

        assert len(manager.list_agent_worktrees()) == 2
        main = [wt for wt in manager.list() if wt.is_main]
        assert [wt.path for wt in main] == [git_repo.resolve()]

        assert manager.remove_all() == 2
        assert manager.list_agent_worktrees() == []
        assert not (git_repo / ".locus-worktrees").exists()
        assert _branches(git_repo) == ["main"]

    def test_user_worktrees_left_alone(self, manager, git_repo, tmp_path):
        """Worktrees outside the task root are neither listed nor removed."""
        mine = tmp_path / "my-checkout"
        git(git_repo, "worktree", "add", "-b", "mine", str(mine))
        manager.create("task-1", "x", "agent-0001")

        assert [wt.branch for wt in manager.list_agent_worktrees()] == ["locus/task-1-x"]
        assert manager.remove_all() == 1
        assert mine.exists()
        assert "mine" in _branches(git_repo)

    def test_prune_after_manual_delete(self, manager):
        """Worktrees deleted behind git's back are pruned."""
        handle = manager.create("task-1", "x", "agent-0001")
        shutil.rmtree(handle.path)
        manager.prune()
        assert manager.list_agent_worktrees() == []
