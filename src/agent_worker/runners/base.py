"""Base runner interface shared by every AI CLI execution strategy."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from ..utils.text import strip_ansi

ABORTED_ERROR = "Aborted by user"
# Exit status reported when an aborted process left no code of its own (128 + SIGTERM)
ABORTED_EXIT_CODE = 143
MAX_ERROR_LENGTH = 500


@dataclass
class RunnerOptions:
    """Options for a single runner execution."""
    prompt: str
    cwd: Union[str, Path]
    model: Optional[str] = None
    # Label such as "issue #42" used for sandbox naming and status display
    activity: Optional[str] = None
    on_output: Optional[Callable[[str], None]] = None
    on_tool_activity: Optional[Callable[[str], None]] = None
    on_status_change: Optional[Callable[[str], None]] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class RunnerResult:
    """Result of one execute() call."""
    success: bool
    output: str
    exit_code: int
    error: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.error == ABORTED_ERROR


class AgentRunner(ABC):
    """Abstract base class for AI CLI runners.

    Concrete strategies (direct or sandboxed, Claude or Codex) are chosen by
    configuration when the runner is built; callers only use this contract.
    """

    name: str = "runner"

    @abstractmethod
    async def is_available(self) -> bool:
        """Return True when the underlying CLI can be launched."""

    @abstractmethod
    async def get_version(self) -> str:
        """Return the CLI version string, or "unknown"."""

    @abstractmethod
    async def execute(self, options: RunnerOptions) -> RunnerResult:
        """
        Run the CLI once with the given prompt.

        Never raises for tool failures; spawn errors, non-zero exits and
        aborts are all reported through the returned RunnerResult.
        """

    @abstractmethod
    def abort(self) -> None:
        """Terminate the in-flight process. Safe to call repeatedly or when idle."""

    async def close(self) -> None:
        """Release resources held across executions. Default no-op."""


def _normalize(message: Optional[str]) -> Optional[str]:
    if not message:
        return None
    trimmed = strip_ansi(message).strip()
    return trimmed or None


def _error_from_structured_line(line: str) -> Optional[str]:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None

    item = parsed.get("item") if isinstance(parsed.get("item"), dict) else {}
    candidates = [
        parsed.get("error"),
        parsed.get("message"),
        parsed.get("text"),
        item.get("error"),
        item.get("message"),
        item.get("text"),
    ]
    for value in candidates:
        if isinstance(value, str):
            normalized = _normalize(value)
            if normalized:
                return normalized
    return None


def extract_error_from_output(output: str) -> Optional[str]:
    """Pull a readable error from the last meaningful line of tool output.

    JSON event lines are searched for error/message/text fields (also under
    ``item``); plain lines are used as-is. Result is ANSI-stripped and
    truncated to 500 characters.
    """
    if not output:
        return None

    for raw_line in reversed(output.split("\n")):
        line = _normalize(raw_line)
        if not line:
            continue
        structured = _error_from_structured_line(line)
        return (structured or line)[:MAX_ERROR_LENGTH]

    return None


def describe_failure(result: RunnerResult, runner_name: str) -> str:
    """Best available error text for a failed RunnerResult."""
    return (
        _normalize(result.error)
        or extract_error_from_output(result.output)
        or f"{runner_name} failed with exit code {result.exit_code}."
    )
