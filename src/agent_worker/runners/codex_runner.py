"""Codex CLI subprocess runner (``codex exec`` in full-auto mode)."""

import json
import logging
from typing import List, Optional

from .base import RunnerOptions
from .subprocess_runner import OutputParser, SubprocessRunner
from ..utils.text import first_line, strip_markdown_emphasis

logger = logging.getLogger(__name__)


def build_codex_args(model: Optional[str] = None) -> List[str]:
    """CLI arguments for ``codex``; the trailing ``-`` reads the prompt from stdin."""
    args = ["exec", "--full-auto", "--skip-git-repo-check", "--json"]
    if model:
        args.extend(["--model", model])
    args.append("-")
    return args


class CodexEventParser(OutputParser):
    """Parses codex JSONL events.

    Agent messages are buffered and only emitted when the turn completes,
    so status displays keep showing tool activity while commands run.
    """

    def __init__(self, options: RunnerOptions):
        super().__init__(options)
        self._agent_messages: List[str] = []

    def process_line(self, line: str) -> None:
        if not line.strip():
            return

        try:
            event = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            self.emit_raw(line)
            return
        if not isinstance(event, dict):
            self.emit_raw(line)
            return

        event_type = event.get("type")
        item = event.get("item") if isinstance(event.get("item"), dict) else {}
        item_type = item.get("type")

        if event_type == "item.started" and item_type == "command_execution":
            self.tool_activity(f"running: {first_line(item.get('command') or '')}")
        elif event_type == "item.completed" and item_type == "command_execution":
            exit_code = item.get("exit_code")
            self.tool_activity("done" if exit_code == 0 else f"exit {exit_code}")
        elif event_type == "item.completed" and item_type == "reasoning":
            thought = strip_markdown_emphasis((item.get("text") or "").strip())
            self.tool_activity(thought)
        elif event_type == "item.completed" and item_type == "agent_message":
            text = item.get("text") or ""
            if text:
                self._agent_messages.append(text)
                self.tool_activity(first_line(text))
        elif event_type == "turn.completed":
            self.flush_messages()
        else:
            logger.debug(f"Ignoring codex event: {event_type}")

    def flush_messages(self) -> None:
        if not self._agent_messages:
            return
        text = "\n\n".join(self._agent_messages)
        self._agent_messages = []
        if self._chunks:
            text = f"\n\n{text}"
        self.emit(text)

    def finish(self) -> None:
        # Process exited mid-turn; keep whatever the agent already said
        self.flush_messages()


class CodexRunner(SubprocessRunner):
    """Runs the Codex CLI directly on the host."""

    name = "codex"
    executable = "codex"

    def __init__(self, model: Optional[str] = None):
        super().__init__()
        self.model = model

    def build_command(self, options: RunnerOptions) -> List[str]:
        return [self.executable] + build_codex_args(options.model or self.model)

    def create_parser(self, options: RunnerOptions) -> OutputParser:
        return CodexEventParser(options)
