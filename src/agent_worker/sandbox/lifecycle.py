"""Docker sandbox lifecycle.

A Sandbox moves through an explicit state machine:

    unreserved -> created -> (reused)* -> destroyed

``created -> unreserved`` is also allowed when a liveness check shows a
sandbox we believed existed is gone, so the next execution recreates it.
User-managed sandboxes are owned externally: they are never created or
removed here, only looked up.
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Set, Union

import docker

from ..utils.subprocess_utils import SubprocessError, run_command, run_command_async

logger = logging.getLogger(__name__)

MAX_SANDBOX_NAME_LENGTH = 63
LIVENESS_TIMEOUT_SECONDS = 5
REMOVE_TIMEOUT_SECONDS = 30
CREATE_TIMEOUT_SECONDS = 300


class SandboxError(RuntimeError):
    """Sandbox could not be created, found or used."""


class InvalidSandboxTransition(SandboxError):
    """Raised when a lifecycle transition is not allowed from the current state."""


class SandboxState(str, Enum):
    UNRESERVED = "unreserved"
    CREATED = "created"
    DESTROYED = "destroyed"


class SandboxMode(str, Enum):
    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"
    USER_MANAGED = "user_managed"


_ALLOWED_TRANSITIONS: Dict[SandboxState, FrozenSet[SandboxState]] = {
    SandboxState.UNRESERVED: frozenset({SandboxState.CREATED, SandboxState.DESTROYED}),
    SandboxState.CREATED: frozenset({SandboxState.UNRESERVED, SandboxState.DESTROYED}),
    SandboxState.DESTROYED: frozenset(),
}


class SandboxRegistry:
    """Active sandboxes owned by this process, removed on crash or forced shutdown.

    Owned by the worker and handed to every lifecycle it builds; sandboxes
    register and unregister themselves as they transition.
    """

    def __init__(self):
        self._names: Set[str] = set()

    def register(self, name: str) -> None:
        self._names.add(name)

    def unregister(self, name: str) -> None:
        self._names.discard(name)

    @property
    def active(self) -> List[str]:
        return sorted(self._names)

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    async def destroy_all(self) -> None:
        """Remove every registered sandbox. Failures are logged; the registry is always emptied."""
        for name in self.active:
            logger.info(f"Removing sandbox {name}")
            await remove_sandbox(name)
        self._names.clear()


class Sandbox:
    """One docker sandbox and its lifecycle state."""

    def __init__(
        self,
        name: str,
        mode: SandboxMode,
        registry: Optional[SandboxRegistry] = None,
    ):
        self.name = name
        self.mode = mode
        self.registry = registry
        # A user-managed sandbox already exists by the time we see it
        self.state = SandboxState.CREATED if mode == SandboxMode.USER_MANAGED else SandboxState.UNRESERVED

    def __repr__(self) -> str:
        return f"Sandbox(name={self.name!r}, mode={self.mode.value}, state={self.state.value})"

    @property
    def owned(self) -> bool:
        return self.mode != SandboxMode.USER_MANAGED

    @property
    def is_created(self) -> bool:
        return self.state == SandboxState.CREATED

    def _transition(self, target: SandboxState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidSandboxTransition(
                f"Sandbox {self.name}: cannot move from {self.state.value} to {target.value}"
            )
        logger.debug(f"Sandbox {self.name}: {self.state.value} -> {target.value}")
        self.state = target

    def mark_created(self) -> None:
        """Record that the sandbox is being created; registers it for crash cleanup."""
        if not self.owned:
            raise InvalidSandboxTransition(f"Sandbox {self.name} is user-managed and cannot be created here")
        self._transition(SandboxState.CREATED)
        if self.registry is not None:
            self.registry.register(self.name)

    def mark_lost(self) -> None:
        """The sandbox vanished underneath us; the next execution must recreate it."""
        if not self.owned:
            raise InvalidSandboxTransition(f"Sandbox {self.name} is user-managed and cannot be recreated here")
        self._transition(SandboxState.UNRESERVED)
        if self.registry is not None:
            self.registry.unregister(self.name)

    async def is_alive(self) -> bool:
        return await sandbox_exists(self.name)

    async def destroy(self) -> None:
        """
        Remove the sandbox.

        No-op for user-managed sandboxes and for sandboxes already destroyed.
        The registry entry is dropped on every path.
        """
        try:
            if not self.owned or self.state == SandboxState.DESTROYED:
                return
            was_created = self.is_created
            self._transition(SandboxState.DESTROYED)
            if was_created:
                await remove_sandbox(self.name)
        finally:
            if self.registry is not None:
                self.registry.unregister(self.name)


class SandboxLifecycle:
    """Hands out sandboxes according to the configured mode.

    - ephemeral: a fresh, uniquely named sandbox per acquire(), destroyed on release()
    - persistent: one sandbox reused across executions, destroyed on close()
    - user_managed: an externally created sandbox that must already be running
    """

    def __init__(
        self,
        mode: SandboxMode,
        project_root: Union[str, Path],
        registry: Optional[SandboxRegistry] = None,
        name: Optional[str] = None,
    ):
        if mode == SandboxMode.USER_MANAGED and not name:
            raise ValueError("A user-managed sandbox requires a sandbox name")
        self.mode = mode
        self.project_root = Path(project_root)
        self.registry = registry if registry is not None else SandboxRegistry()
        self.name = name
        self._sandbox: Optional[Sandbox] = None

    async def acquire(self, activity: Optional[str] = None) -> Sandbox:
        """
        Return the sandbox the next execution should run in.

        Raises:
            SandboxError: If a user-managed sandbox is not running
        """
        if self.mode == SandboxMode.EPHEMERAL:
            return Sandbox(build_sandbox_name(self.project_root, activity), self.mode, self.registry)

        if self.mode == SandboxMode.USER_MANAGED:
            if self._sandbox is None:
                self._sandbox = Sandbox(self.name, self.mode, self.registry)
            if not await self._sandbox.is_alive():
                raise SandboxError(f"Sandbox is not running: {self._sandbox.name}")
            return self._sandbox

        if self._sandbox is None or self._sandbox.state == SandboxState.DESTROYED:
            name = self.name or build_sandbox_name(self.project_root, activity)
            self._sandbox = Sandbox(name, self.mode, self.registry)
        elif self._sandbox.is_created and not await self._sandbox.is_alive():
            logger.warning(f"Persistent sandbox {self._sandbox.name} is no longer running, it will be recreated")
            self._sandbox.mark_lost()
        return self._sandbox

    async def release(self, sandbox: Sandbox) -> None:
        """Called after every execution, on success and failure alike."""
        if self.mode == SandboxMode.EPHEMERAL:
            await sandbox.destroy()

    async def close(self) -> None:
        """Tear down the persistent sandbox at the end of the run."""
        if self._sandbox is not None and self.mode == SandboxMode.PERSISTENT:
            await self._sandbox.destroy()
        self._sandbox = None


# --- docker sandbox CLI helpers ----------------------------------------------

async def sandbox_exists(name: str) -> bool:
    """Check `docker sandbox ls` for an exact name match."""
    try:
        result = await run_command_async(
            ["docker", "sandbox", "ls"], check=False, timeout=LIVENESS_TIMEOUT_SECONDS
        )
    except SubprocessError as e:
        logger.debug(f"docker sandbox ls failed: {e}")
        return False
    if result.returncode != 0:
        return False
    return any(name in line.split() for line in result.stdout.splitlines())


async def create_sandbox(name: str, project_root: Union[str, Path]) -> None:
    """
    Create a named sandbox with ``project_root`` synced in.

    The bundled claude agent is started once with ``--version`` so the
    sandbox is up without running a session.

    Raises:
        SandboxError: If ``docker sandbox run`` fails
    """
    try:
        await run_command_async(
            ["docker", "sandbox", "run", "--name", name, "claude", str(project_root), "--", "--version"],
            timeout=CREATE_TIMEOUT_SECONDS,
        )
    except SubprocessError as e:
        raise SandboxError(f"Failed to create sandbox {name}: {e.stderr.strip() or e}") from e


async def remove_sandbox(name: str) -> bool:
    try:
        result = await run_command_async(
            ["docker", "sandbox", "rm", name], check=False, timeout=REMOVE_TIMEOUT_SECONDS
        )
    except SubprocessError as e:
        logger.warning(f"Failed to remove sandbox {name}: {e}")
        return False
    if result.returncode != 0:
        # Already gone is the common case here
        logger.debug(f"docker sandbox rm {name} exited {result.returncode}: {result.stderr.strip()}")
        return False
    logger.debug(f"Removed sandbox {name}")
    return True


# --- naming --------------------------------------------------------------------

_ISSUE_PATTERN = re.compile(r"#(\d+)")
_TASK_PATTERN = re.compile(r"\btask[\s:#-]+([A-Za-z0-9][A-Za-z0-9_-]*)", re.IGNORECASE)


def _sanitize_segment(value: str) -> str:
    return re.sub(r"[^a-z0-9-]+", "-", value.lower()).strip("-")


def activity_identifier(activity: Optional[str]) -> Optional[str]:
    """Issue number (``#42``) or task id (``task abc-1``) from a free-text activity label."""
    if not activity:
        return None
    match = _ISSUE_PATTERN.search(activity) or _TASK_PATTERN.search(activity)
    if not match:
        return None
    return _sanitize_segment(match.group(1)) or None


def build_sandbox_name(
    project_root: Union[str, Path],
    activity: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """
    Deterministic sandbox name salted with a millisecond timestamp.

    ``locus-<project>-<id>-<ts>`` when the activity names an issue or task,
    ``locus-<project>-<ts>`` otherwise. Capped at 63 characters, keeping the
    timestamp intact.
    """
    segment = _sanitize_segment(Path(project_root).name) or "project"
    timestamp = str(int((time.time() if now is None else now) * 1000))

    parts = ["locus", segment]
    identifier = activity_identifier(activity)
    if identifier:
        parts.append(identifier)

    prefix = "-".join(parts)
    max_prefix = MAX_SANDBOX_NAME_LENGTH - len(timestamp) - 1
    prefix = prefix[:max_prefix].rstrip("-")
    return f"{prefix}-{timestamp}"


# --- support detection ---------------------------------------------------------

@dataclass(frozen=True)
class SandboxSupport:
    available: bool
    reason: str = ""


def detect_sandbox_support() -> SandboxSupport:
    """Check that the docker daemon answers and the ``docker sandbox`` plugin is installed."""
    try:
        client = docker.from_env()
        try:
            client.ping()
        finally:
            client.close()
    except docker.errors.DockerException as e:
        return SandboxSupport(False, f"Failed to connect to Docker daemon. Is Docker running? {e}")

    try:
        run_command(["docker", "sandbox", "version"], timeout=10)
    except SubprocessError as e:
        return SandboxSupport(False, f"docker sandbox is not available: {e.stderr.strip() or e}")
    except OSError as e:
        return SandboxSupport(False, f"docker CLI not found: {e}")

    return SandboxSupport(True)
