"""Sandboxed runner strategies.

Instead of spawning the agent CLI on the host, these runners exec it
inside a docker sandbox obtained from a SandboxLifecycle. Availability
and version checks report the host CLI, since the sandboxed copy is
provisioned lazily.
"""

import logging
from typing import List, Optional, Set, Type

from .base import RunnerOptions, RunnerResult
from .claude_runner import ClaudeRunner, build_claude_args
from .codex_runner import CodexRunner, build_codex_args
from .subprocess_runner import OutputParser, SubprocessRunner
from ..sandbox.lifecycle import Sandbox, SandboxError, SandboxLifecycle, create_sandbox
from ..sandbox.sandbox_ignore import enforce_sandbox_ignore
from ..utils.subprocess_utils import SubprocessError, run_command_async

logger = logging.getLogger(__name__)

CODEX_CHECK_TIMEOUT_SECONDS = 10
CODEX_INSTALL_TIMEOUT_SECONDS = 120


class SandboxedRunner(SubprocessRunner):
    """Base for runners that exec an agent CLI inside a docker sandbox.

    Each execute() acquires a sandbox from the lifecycle, creates it if it
    is still unreserved, strips ignored files, runs the CLI through
    ``docker sandbox exec`` and releases the sandbox afterwards, whatever
    the outcome.
    """

    executable = "docker"
    direct_runner_class: Type[SubprocessRunner]
    # CLI executed inside the sandbox
    tool: str = ""

    def __init__(self, lifecycle: SandboxLifecycle, model: Optional[str] = None):
        super().__init__()
        self.lifecycle = lifecycle
        self.model = model
        self._direct = self.direct_runner_class(model)
        self._sandbox: Optional[Sandbox] = None

    async def is_available(self) -> bool:
        return await self._direct.is_available()

    async def get_version(self) -> str:
        return await self._direct.get_version()

    def tool_args(self, options: RunnerOptions) -> List[str]:
        raise NotImplementedError

    def create_parser(self, options: RunnerOptions) -> OutputParser:
        return self._direct.create_parser(options)

    def build_env(self) -> dict:
        return self._direct.build_env()

    def process_cwd(self, options: RunnerOptions) -> Optional[str]:
        # Working directory is set inside the sandbox with -w
        return None

    def spawn_target(self) -> str:
        return "docker sandbox"

    def build_command(self, options: RunnerOptions) -> List[str]:
        return [
            "docker", "sandbox", "exec", "-i",
            "-w", str(options.cwd),
            self._sandbox.name,
            self.tool,
        ] + self.tool_args(options)

    async def prepare(self, options: RunnerOptions) -> Optional[RunnerResult]:
        try:
            self._sandbox = await self.lifecycle.acquire(options.activity)
            _report_status(options, "Syncing sandbox...")
            await self._ensure_created(self._sandbox)
            await enforce_sandbox_ignore(self._sandbox.name, options.cwd)
            await self.provision(self._sandbox)
        except SandboxError as e:
            logger.error(f"{self.name}: {e}")
            return RunnerResult(success=False, output="", exit_code=1, error=str(e))

        _report_status(options, "Thinking...")
        return None

    async def provision(self, sandbox: Sandbox) -> None:
        """Hook for installing extra tooling inside a ready sandbox."""

    async def _ensure_created(self, sandbox: Sandbox) -> None:
        if sandbox.is_created:
            logger.debug(f"Reusing sandbox {sandbox.name}")
            return

        project_root = str(self.lifecycle.project_root)
        logger.info(f"Creating sandbox {sandbox.name} with workspace {project_root}")
        sandbox.mark_created()
        await create_sandbox(sandbox.name, project_root)

        if not await sandbox.is_alive():
            raise SandboxError(f"Sandbox {sandbox.name} was not running after creation")

    async def execute(self, options: RunnerOptions) -> RunnerResult:
        self._sandbox = None
        try:
            return await super().execute(options)
        finally:
            sandbox, self._sandbox = self._sandbox, None
            if sandbox is not None:
                await self.lifecycle.release(sandbox)

    async def close(self) -> None:
        await self.lifecycle.close()


class SandboxedClaudeRunner(SandboxedRunner):
    """Claude CLI inside a docker sandbox."""

    name = "claude-sandboxed"
    tool = "claude"
    direct_runner_class = ClaudeRunner

    def tool_args(self, options: RunnerOptions) -> List[str]:
        return build_claude_args(options.model or self.model)


class SandboxedCodexRunner(SandboxedRunner):
    """Codex CLI inside a docker sandbox, installed on first use."""

    name = "codex-sandboxed"
    tool = "codex"
    direct_runner_class = CodexRunner

    def __init__(self, lifecycle: SandboxLifecycle, model: Optional[str] = None):
        super().__init__(lifecycle, model)
        self._codex_ready: Set[str] = set()

    def tool_args(self, options: RunnerOptions) -> List[str]:
        return build_codex_args(options.model or self.model)

    async def provision(self, sandbox: Sandbox) -> None:
        """Install the codex CLI unless the sandbox image already has it."""
        if sandbox.name in self._codex_ready:
            return

        try:
            check = await run_command_async(
                ["docker", "sandbox", "exec", sandbox.name, "which", "codex"],
                check=False,
                timeout=CODEX_CHECK_TIMEOUT_SECONDS,
            )
        except SubprocessError as e:
            logger.debug(f"codex lookup in {sandbox.name} failed: {e}")
            check = None

        if check is None or check.returncode != 0:
            logger.info(f"Installing codex in sandbox {sandbox.name}")
            try:
                await run_command_async(
                    ["docker", "sandbox", "exec", sandbox.name, "npm", "install", "-g", "@openai/codex"],
                    timeout=CODEX_INSTALL_TIMEOUT_SECONDS,
                )
            except SubprocessError as e:
                raise SandboxError(f"Failed to install codex in sandbox {sandbox.name}: {e.stderr.strip() or e}") from e

        self._codex_ready.add(sandbox.name)


def _report_status(options: RunnerOptions, status: str) -> None:
    if options.on_status_change:
        options.on_status_change(status)
