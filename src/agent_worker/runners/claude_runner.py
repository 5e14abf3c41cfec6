"""Claude CLI subprocess runner."""

import json
import logging
from typing import List, Optional, Set

from .base import RunnerOptions
from .subprocess_runner import OutputParser, SubprocessRunner

logger = logging.getLogger(__name__)


def build_claude_args(model: Optional[str] = None) -> List[str]:
    """CLI flags for a non-interactive, stream-json Claude run reading its prompt from stdin."""
    args = [
        "--print",
        "--dangerously-skip-permissions",
        "--no-session-persistence",
    ]
    if model:
        args.extend(["--model", model])
    args.extend(["--verbose", "--output-format", "stream-json"])
    return args


def format_tool_call(name: str, tool_input: dict) -> str:
    """Short human-readable summary of a tool invocation."""
    tool_input = tool_input if isinstance(tool_input, dict) else {}
    if name == "Read":
        return f"reading {tool_input.get('file_path', '')}"
    if name == "Write":
        return f"writing {tool_input.get('file_path', '')}"
    if name in ("Edit", "MultiEdit"):
        return f"editing {tool_input.get('file_path', '')}"
    if name == "Bash":
        return f"running: {str(tool_input.get('command', ''))[:60]}"
    if name == "Glob":
        return f"glob {tool_input.get('pattern', '')}"
    if name == "Grep":
        return f"grep {tool_input.get('pattern', '')}"
    if name == "LS":
        return f"ls {tool_input.get('path', '')}"
    if name == "WebFetch":
        return f"fetching {str(tool_input.get('url', ''))[:50]}"
    if name == "WebSearch":
        return f"searching: {tool_input.get('query', '')}"
    if name == "Task":
        return "spawning agent"
    return name


class ClaudeStreamParser(OutputParser):
    """Parses ``--output-format stream-json`` events.

    Tool-use blocks are reported once per tool id as activity; the final
    ``result`` event carries the authoritative output text. Lines that are
    not JSON pass through verbatim.
    """

    def __init__(self, options: RunnerOptions):
        super().__init__(options)
        self._seen_tool_ids: Set[str] = set()

    def process_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        try:
            event = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            # CLI version mismatch or plain-text output
            self.emit_raw(line)
            return
        if not isinstance(event, dict):
            self.emit_raw(line)
            return

        event_type = event.get("type")
        if event_type == "assistant":
            message = event.get("message") if isinstance(event.get("message"), dict) else {}
            content = message.get("content")
            for block in content if isinstance(content, list) else []:
                if not isinstance(block, dict) or block.get("type") != "tool_use":
                    continue
                tool_id = block.get("id")
                if not tool_id or tool_id in self._seen_tool_ids:
                    continue
                self._seen_tool_ids.add(tool_id)
                self.tool_activity(format_tool_call(block.get("name", ""), block.get("input") or {}))
        elif event_type == "result":
            self.replace_output(event.get("result") or "")
        else:
            logger.debug(f"Ignoring stream-json event type: {event_type}")


class ClaudeRunner(SubprocessRunner):
    """Runs the Claude CLI directly on the host."""

    name = "claude"
    executable = "claude"
    # A nested session guard in the CLI trips when these leak from a parent session
    STRIPPED_ENV_VARS = frozenset({"CLAUDECODE", "CLAUDE_CODE"})

    def __init__(self, model: Optional[str] = None):
        super().__init__()
        self.model = model

    def build_command(self, options: RunnerOptions) -> List[str]:
        return [self.executable] + build_claude_args(options.model or self.model)

    def create_parser(self, options: RunnerOptions) -> OutputParser:
        return ClaudeStreamParser(options)
