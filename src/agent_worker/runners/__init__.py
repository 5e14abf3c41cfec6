"""AI CLI runner strategies."""

from .base import (
    ABORTED_ERROR,
    AgentRunner,
    RunnerOptions,
    RunnerResult,
    describe_failure,
    extract_error_from_output,
)
from .claude_runner import ClaudeRunner
from .codex_runner import CodexRunner
from .factory import create_runner
from .sandboxed import SandboxedClaudeRunner, SandboxedCodexRunner
from .subprocess_runner import OutputParser, SubprocessRunner

__all__ = [
    "ABORTED_ERROR",
    "AgentRunner",
    "RunnerOptions",
    "RunnerResult",
    "describe_failure",
    "extract_error_from_output",
    "ClaudeRunner",
    "CodexRunner",
    "create_runner",
    "SandboxedClaudeRunner",
    "SandboxedCodexRunner",
    "OutputParser",
    "SubprocessRunner",
]
