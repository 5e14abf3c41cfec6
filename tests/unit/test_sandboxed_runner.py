"""Tests for sandboxed runners, driven by a fake ``docker`` CLI on PATH."""

import pytest

from agent_worker.runners.base import RunnerOptions
from agent_worker.runners.sandboxed import SandboxedClaudeRunner, SandboxedCodexRunner
from agent_worker.sandbox.lifecycle import SandboxLifecycle, SandboxMode, SandboxRegistry

from conftest import write_executable

# Records every call in $DOCKER_LOG and keeps one file per sandbox in $SANDBOX_STATE
FAKE_DOCKER = r"""#!/bin/sh
echo "$*" >> "$DOCKER_LOG"
[ "$1" = "sandbox" ] || exit 1
shift
cmd="$1"
shift
case "$cmd" in
  version)
    echo "sandbox v0.1"
    ;;
  run)
    if [ -n "$FAIL_CREATE" ]; then
      echo "image pull failed" >&2
      exit 1
    fi
    touch "$SANDBOX_STATE/$2"
    ;;
  ls)
    echo "NAME STATUS"
    for f in "$SANDBOX_STATE"/*; do
      [ -e "$f" ] && echo "$(basename "$f") running"
    done
    ;;
  rm)
    [ -e "$SANDBOX_STATE/$1" ] || exit 1
    rm -f "$SANDBOX_STATE/$1"
    ;;
  exec)
    if [ "$1" = "-i" ]; then
      cat > /dev/null
      if [ "$5" = "codex" ]; then
        echo '{"type":"item.completed","item":{"type":"agent_message","text":"codex done"}}'
        echo '{"type":"turn.completed"}'
      else
        echo '{"type":"result","result":"sandbox done"}'
      fi
    elif [ "$2" = "which" ]; then
      [ -n "$CODEX_PRESENT" ]
      exit $?
    fi
    ;;
esac
"""


@pytest.fixture
def fake_docker(tmp_path, monkeypatch):
    """Put the fake docker first on PATH; returns a reader for the call log."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    state = tmp_path / "sandboxes"
    state.mkdir()
    log = tmp_path / "docker.log"
    log.write_text("")
    write_executable(bin_dir / "docker", FAKE_DOCKER)

    monkeypatch.setenv("PATH", f"{bin_dir}:/usr/bin:/bin")
    monkeypatch.setenv("DOCKER_LOG", str(log))
    monkeypatch.setenv("SANDBOX_STATE", str(state))

    class Docker:
        sandboxes = state

        @staticmethod
        def calls():
            return log.read_text().splitlines()

        @staticmethod
        def running():
            return sorted(p.name for p in state.iterdir())

    return Docker


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


def _options(project, **kwargs):
    return RunnerOptions(prompt="implement /health", cwd=project, activity="task t-1", **kwargs)


class TestSandboxedClaudeRunner:
    @pytest.mark.asyncio
    async def test_ephemeral_creates_and_removes(self, project, fake_docker):
        """An ephemeral sandbox exists only for the duration of one execution."""
        registry = SandboxRegistry()
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project, registry))

        result = await runner.execute(_options(project))

        assert result.success is True
        assert result.output == "sandbox done"
        assert fake_docker.running() == []
        assert len(registry) == 0

        calls = fake_docker.calls()
        run_calls = [c for c in calls if c.startswith("sandbox run")]
        assert len(run_calls) == 1
        assert "--name locus-project-t-1-" in run_calls[0]
        assert any(c.startswith("sandbox rm locus-project-t-1-") for c in calls)

    @pytest.mark.asyncio
    async def test_exec_command_shape(self, project, fake_docker):
        """The CLI runs through docker sandbox exec with the task cwd."""
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project), model="claude-sonnet")

        await runner.execute(_options(project))

        exec_call = next(c for c in fake_docker.calls() if c.startswith("sandbox exec -i"))
        assert f"-w {project} locus-project-t-1-" in exec_call
        assert " claude --print " in exec_call
        assert "--model claude-sonnet" in exec_call

    @pytest.mark.asyncio
    async def test_persistent_reused(self, project, fake_docker):
        """A persistent sandbox is created once and reused until close()."""
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.PERSISTENT, project))

        first = await runner.execute(_options(project))
        second = await runner.execute(_options(project))

        assert first.success and second.success
        calls = fake_docker.calls()
        assert len([c for c in calls if c.startswith("sandbox run")]) == 1
        assert len([c for c in calls if c.startswith("sandbox exec -i")]) == 2
        assert len(fake_docker.running()) == 1

        await runner.close()
        assert fake_docker.running() == []

    @pytest.mark.asyncio
    async def test_persistent_recreated_when_lost(self, project, fake_docker):
        """A persistent sandbox removed externally is recreated on next use."""
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.PERSISTENT, project))
        await runner.execute(_options(project))
        for path in fake_docker.sandboxes.iterdir():
            path.unlink()

        result = await runner.execute(_options(project))

        assert result.success is True
        assert len([c for c in fake_docker.calls() if c.startswith("sandbox run")]) == 2
        await runner.close()

    @pytest.mark.asyncio
    async def test_create_failure_is_failed_result(self, project, fake_docker, monkeypatch):
        """A sandbox that cannot be created fails the execution without raising."""
        monkeypatch.setenv("FAIL_CREATE", "1")
        registry = SandboxRegistry()
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project, registry))

        result = await runner.execute(_options(project))

        assert result.success is False
        assert result.error.startswith("Failed to create sandbox")
        assert "image pull failed" in result.error
        assert len(registry) == 0
        assert not any(c.startswith("sandbox exec -i") for c in fake_docker.calls())

    @pytest.mark.asyncio
    async def test_user_managed_not_running(self, project, fake_docker):
        """A user-managed sandbox must already be running."""
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.USER_MANAGED, project, name="my-box"))

        result = await runner.execute(_options(project))

        assert result.success is False
        assert result.error == "Sandbox is not running: my-box"

    @pytest.mark.asyncio
    async def test_user_managed_left_running(self, project, fake_docker):
        """A user-managed sandbox is used as-is and never created or removed."""
        (fake_docker.sandboxes / "my-box").touch()
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.USER_MANAGED, project, name="my-box"))

        result = await runner.execute(_options(project))
        await runner.close()

        assert result.success is True
        calls = fake_docker.calls()
        assert not any(c.startswith("sandbox run") for c in calls)
        assert not any(c.startswith("sandbox rm") for c in calls)
        assert fake_docker.running() == ["my-box"]

    @pytest.mark.asyncio
    async def test_sandbox_ignore_enforced(self, project, fake_docker):
        """Ignored files are removed inside the sandbox before the agent runs."""
        (project / ".sandboxignore").write_text(".env\n")
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project))

        await runner.execute(_options(project))

        calls = fake_docker.calls()
        cleanup = [i for i, c in enumerate(calls) if " sh -c find " in c]
        agent = [i for i, c in enumerate(calls) if c.startswith("sandbox exec -i")]
        assert cleanup and agent
        assert cleanup[0] < agent[0]

    @pytest.mark.asyncio
    async def test_status_updates(self, project, fake_docker):
        """Status moves through syncing to thinking."""
        statuses = []
        runner = SandboxedClaudeRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project))

        await runner.execute(_options(project, on_status_change=statuses.append))

        assert statuses == ["Syncing sandbox...", "Thinking..."]


class TestSandboxedCodexRunner:
    @pytest.mark.asyncio
    async def test_installs_codex_when_missing(self, project, fake_docker):
        """codex is installed with npm when the sandbox lacks it."""
        runner = SandboxedCodexRunner(SandboxLifecycle(SandboxMode.PERSISTENT, project))

        result = await runner.execute(_options(project))
        await runner.execute(_options(project))

        assert result.output == "codex done"
        installs = [c for c in fake_docker.calls() if "npm install -g @openai/codex" in c]
        assert len(installs) == 1
        await runner.close()

    @pytest.mark.asyncio
    async def test_skips_install_when_present(self, project, fake_docker, monkeypatch):
        """An image that ships codex is used without installing."""
        monkeypatch.setenv("CODEX_PRESENT", "1")
        runner = SandboxedCodexRunner(SandboxLifecycle(SandboxMode.EPHEMERAL, project))

        result = await runner.execute(_options(project))

        assert result.success is True
        assert not any("npm install" in c for c in fake_docker.calls())
