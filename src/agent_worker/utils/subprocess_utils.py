"""Standardized subprocess utilities for command execution."""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Union, List

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Exception raised when a subprocess command fails."""

    def __init__(
        self,
        cmd: str,
        returncode: int,
        stderr: str,
        stdout: str = "",
        cwd: Optional[Path] = None,
        timed_out: bool = False,
    ):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        self.cwd = cwd
        self.timed_out = timed_out

        location = f" (cwd: {cwd})" if cwd else ""
        if timed_out:
            message = f"Command timed out{location}: {cmd}"
        else:
            message = f"Command failed with exit code {returncode}{location}: {cmd}\nstderr: {stderr}"
        super().__init__(message)


def _cmd_to_str(cmd: Union[str, List[str]]) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command with standardized error handling.

    Args:
        cmd: Command to run (string or list)
        cwd: Working directory
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds
        env: Environment variables
        input_text: Text written to the command's stdin

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails, or on timeout
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False,  # We handle check ourselves for better error messages
        )
    except subprocess.TimeoutExpired as e:
        logger.error(f"Command timed out after {timeout}s: {_cmd_to_str(cmd)}")
        raise SubprocessError(
            cmd=_cmd_to_str(cmd),
            returncode=-1,
            stderr=str(e.stderr or ""),
            stdout=str(e.stdout or ""),
            cwd=cwd,
            timed_out=True,
        ) from e

    if check and result.returncode != 0:
        raise SubprocessError(
            cmd=_cmd_to_str(cmd),
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
            cwd=cwd,
        )

    return result


def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[float] = 30,
) -> subprocess.CompletedProcess:
    """
    Run a git command with standardized error handling.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (git repo)
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds (default: 30, None for no limit)

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails
    """
    try:
        return run_command(["git"] + args, cwd=cwd, check=check, timeout=timeout)
    except SubprocessError:
        logger.debug(f"Git command failed in {cwd}: {' '.join(args)}")
        raise


async def run_command_async(
    cmd: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """
    Event-loop friendly counterpart of run_command.

    Used for docker sandbox housekeeping so slow commands (image pulls,
    npm installs) never stall the heartbeat.

    Raises:
        SubprocessError: If check=True and command fails, on timeout, or if
            the executable cannot be spawned
    """
    cmd_str = _cmd_to_str(cmd)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        raise SubprocessError(cmd=cmd_str, returncode=127, stderr=str(e), cwd=cwd) from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        logger.error(f"Command timed out after {timeout}s: {cmd_str}")
        raise SubprocessError(cmd=cmd_str, returncode=-1, stderr="", cwd=cwd, timed_out=True) from e

    result = subprocess.CompletedProcess(
        args=cmd,
        returncode=process.returncode,
        stdout=stdout_bytes.decode(errors="replace"),
        stderr=stderr_bytes.decode(errors="replace"),
    )
    if check and result.returncode != 0:
        raise SubprocessError(
            cmd=cmd_str,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
            cwd=cwd,
        )
    return result


def check_command_exists(command: str) -> bool:
    """
    Check if a command exists in PATH.

    Args:
        command: Command name to check

    Returns:
        True if command exists, False otherwise
    """
    return shutil.which(command) is not None


def get_command_output(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    timeout: float = 30,
) -> str:
    """
    Run a command and return its output (stdout).

    Raises:
        SubprocessError: If command fails
    """
    result = run_command(cmd, cwd=cwd, check=True, timeout=timeout)
    return result.stdout.strip()
