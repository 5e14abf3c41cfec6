"""Subprocess supervision shared by every CLI runner strategy."""

import asyncio
import logging
import os
import re
import signal
from typing import List, Optional

from .base import ABORTED_ERROR, ABORTED_EXIT_CODE, AgentRunner, RunnerOptions, RunnerResult
from ..utils.line_accumulator import LineAccumulator
from ..utils.process_utils import kill_process_tree

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class OutputParser:
    """Turns complete stdout lines into accumulated output and callbacks.

    The default treats every line as raw text; CLI-specific subclasses
    decode their structured event streams and fall back to this for
    anything that is not JSON.
    """

    def __init__(self, options: RunnerOptions):
        self.options = options
        self._chunks: List[str] = []

    def process_line(self, line: str) -> None:
        if not line.strip():
            return
        self.emit_raw(line)

    def finish(self) -> None:
        """Called once after the stream closes."""

    @property
    def output(self) -> str:
        return "".join(self._chunks)

    def emit_raw(self, line: str) -> None:
        self.emit(f"{line}\n")

    def emit(self, text: str) -> None:
        self._chunks.append(text)
        if self.options.on_output:
            self.options.on_output(text)

    def replace_output(self, text: str) -> None:
        self._chunks = [text]
        if self.options.on_output:
            self.options.on_output(text)

    def tool_activity(self, summary: str) -> None:
        if summary and self.options.on_tool_activity:
            self.options.on_tool_activity(summary)


class SubprocessRunner(AgentRunner):
    """
    Runs one CLI subprocess per execute() call.

    The prompt is always written to stdin, never passed as an argument.
    Stdout is consumed incrementally through a LineAccumulator so a JSON
    record split across reads is only parsed once complete.
    """

    executable: str = ""
    # Seconds between SIGTERM and SIGKILL on abort
    KILL_GRACE_SECONDS = 3.0
    # Environment variables removed from the child environment
    STRIPPED_ENV_VARS: frozenset = frozenset()

    def __init__(self):
        self._current_process: Optional[asyncio.subprocess.Process] = None
        self._aborted = False
        self._kill_handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- hooks for strategies -------------------------------------------------

    def build_command(self, options: RunnerOptions) -> List[str]:
        raise NotImplementedError

    def create_parser(self, options: RunnerOptions) -> OutputParser:
        return OutputParser(options)

    def process_cwd(self, options: RunnerOptions) -> Optional[str]:
        return str(options.cwd)

    def build_env(self) -> dict:
        env = os.environ.copy()
        for key in self.STRIPPED_ENV_VARS:
            env.pop(key, None)
        return env

    async def prepare(self, options: RunnerOptions) -> Optional[RunnerResult]:
        """Pre-flight step; returning a result short-circuits execution."""
        return None

    def spawn_target(self) -> str:
        return self.executable

    # --- availability ---------------------------------------------------------

    async def _read_version(self) -> Optional[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=15)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"{self.executable} --version failed: {e}")
            return None
        if process.returncode != 0:
            return None
        return stdout.decode(errors="replace").strip()

    async def is_available(self) -> bool:
        return await self._read_version() is not None

    async def get_version(self) -> str:
        raw = await self._read_version()
        if raw is None:
            return "unknown"
        return re.sub(rf"^{re.escape(self.executable)}\s*", "", raw, flags=re.IGNORECASE) or "unknown"

    # --- execution ------------------------------------------------------------

    async def execute(self, options: RunnerOptions) -> RunnerResult:
        """
        Spawn the CLI, stream its output and classify the exit.

        Args:
            options: Prompt, working directory, model and callbacks

        Returns:
            RunnerResult; an external abort() always reports "Aborted by user"
        """
        self._aborted = False
        self._loop = asyncio.get_running_loop()

        early = await self.prepare(options)
        if early is not None:
            return early

        cmd = self.build_command(options)
        parser = self.create_parser(options)
        logger.debug(f"Spawning {self.name}: {' '.join(cmd[:8])} (cwd={options.cwd})")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                cwd=self.process_cwd(options),
                start_new_session=True,
            )
        except OSError as e:
            return RunnerResult(
                success=False,
                output="",
                exit_code=1,
                error=f"Failed to spawn {self.spawn_target()}: {e}",
            )

        self._current_process = process
        stderr_chunks: List[str] = []
        timed_out = False

        async def write_prompt():
            try:
                process.stdin.write(options.prompt.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.debug(f"{self.name} closed stdin early: {e}")
            finally:
                process.stdin.close()

        async def read_stdout():
            accumulator = LineAccumulator()
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in accumulator.feed(chunk):
                    parser.process_line(line)
            for line in accumulator.flush():
                parser.process_line(line)

        async def read_stderr():
            while True:
                chunk = await process.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                stderr_chunks.append(text)
                logger.debug(f"{self.name} stderr: {text[:500]}")

        try:
            # An abort that arrived while spawning is delivered now
            if self._aborted:
                self._terminate(process)
            await asyncio.wait_for(
                asyncio.gather(write_prompt(), read_stdout(), read_stderr(), process.wait()),
                timeout=options.timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"{self.name} timed out after {options.timeout}s, killing process")
            kill_process_tree(process.pid, signal.SIGKILL)
            await process.wait()
        finally:
            self._current_process = None
            if self._kill_handle is not None:
                self._kill_handle.cancel()
                self._kill_handle = None
            if process.returncode is None:
                # Cancelled from outside; never leave the CLI running
                kill_process_tree(process.pid, signal.SIGKILL)

        parser.finish()
        output = parser.output
        exit_code = _normalize_exit_code(process.returncode)

        if self._aborted:
            return RunnerResult(
                success=False,
                output=output,
                exit_code=exit_code if exit_code != 0 else ABORTED_EXIT_CODE,
                error=ABORTED_ERROR,
            )

        if timed_out:
            return RunnerResult(
                success=False,
                output=output,
                exit_code=exit_code,
                error=f"{self.name} timed out after {options.timeout} seconds",
            )

        if exit_code == 0:
            return RunnerResult(success=True, output=output, exit_code=0)

        stderr_text = "".join(stderr_chunks).strip()
        return RunnerResult(
            success=False,
            output=output,
            exit_code=exit_code,
            error=stderr_text or f"{self.name} exited with code {exit_code}",
        )

    def abort(self) -> None:
        """Send SIGTERM now and SIGKILL after the grace period.

        Idempotent: later calls while a kill is pending, or calls with no
        process running, only record the abort.
        """
        self._aborted = True
        process = self._current_process
        if process is None or process.returncode is not None:
            return
        if self._kill_handle is not None:
            return
        self._terminate(process)

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        logger.info(f"Aborting {self.name} (pid {process.pid})")
        kill_process_tree(process.pid, signal.SIGTERM)
        if self._loop is not None and not self._loop.is_closed():
            self._kill_handle = self._loop.call_later(
                self.KILL_GRACE_SECONDS, self._force_kill, process
            )

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        self._kill_handle = None
        if process.returncode is None:
            logger.warning(f"{self.name} ignored SIGTERM for {self.KILL_GRACE_SECONDS:g}s, sending SIGKILL")
            kill_process_tree(process.pid, signal.SIGKILL)


def _normalize_exit_code(returncode: Optional[int]) -> int:
    """Map asyncio's negative signal codes to shell-style 128+N."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode
