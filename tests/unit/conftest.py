"""Shared test fixtures for unit tests."""

import asyncio
import os
import stat
import subprocess
from pathlib import Path

import pytest

from agent_worker.core.config import WorkerConfig, WorkerSettings
from agent_worker.core.task import Task
from agent_worker.runners.base import AgentRunner, RunnerOptions, RunnerResult


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` and return stripped stdout."""
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def write_executable(path: Path, content: str) -> Path:
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def git_repo(tmp_path):
    """A project checkout on ``main`` with one commit, tracking a bare ``origin``."""
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", "-q", str(remote)], check=True)

    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "checkout", "-q", "-b", "main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Dev")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Project\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "Initial commit")
    git(repo, "remote", "add", "origin", str(remote))
    git(repo, "push", "-q", "-u", "origin", "main")
    return repo


@pytest.fixture
def bare_remote(git_repo):
    return git_repo.parent / "remote.git"


@pytest.fixture
def make_task():
    """Factory for API-shaped tasks."""

    def _make(task_id: str = "task-1", title: str = "Add health check endpoint", **fields) -> Task:
        data = {"id": task_id, "title": title, "status": "IN_PROGRESS"}
        data.update(fields)
        return Task.model_validate(data)

    return _make


@pytest.fixture
def make_config(tmp_path):
    """Factory for WorkerConfig with fast test timings."""

    def _make(project_path: Path = None, **overrides) -> WorkerConfig:
        settings_fields = {
            "heartbeat_interval": 0.05,
            "dispatch_retry_delay": 0,
            "post_cleanup_delay": 0,
            "log_to_file": False,
        }
        settings_fields.update(overrides.pop("settings", {}))
        data = {
            "agent_id": "agent-0001",
            "workspace_id": "ws-1",
            "api_url": "http://api.test",
            "api_key": "secret",
            "project_path": project_path or tmp_path,
            "settings": WorkerSettings(**settings_fields),
        }
        data.update(overrides)
        return WorkerConfig(**data)

    return _make


@pytest.fixture
def clean_env(monkeypatch):
    """Drop AGENT_* variables so settings come from defaults only."""
    for key in list(os.environ):
        if key.startswith("AGENT_"):
            monkeypatch.delenv(key, raising=False)


class FakeRunner(AgentRunner):
    """Scripted runner: calls ``action(options)`` if given, then returns ``result``.

    ``action`` may be a coroutine function and may return a RunnerResult to
    override the default.
    """

    name = "fake"

    def __init__(self, result: RunnerResult = None, action=None):
        self.result = result or RunnerResult(success=True, output="Done.", exit_code=0)
        self.action = action
        self.calls = []
        self.abort_calls = 0
        self.closed = False

    async def is_available(self) -> bool:
        return True

    async def get_version(self) -> str:
        return "1.0.0"

    async def execute(self, options: RunnerOptions) -> RunnerResult:
        self.calls.append(options)
        if self.action is not None:
            outcome = self.action(options)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            if isinstance(outcome, RunnerResult):
                return outcome
        return self.result

    def abort(self) -> None:
        self.abort_calls += 1

    async def close(self) -> None:
        self.closed = True
