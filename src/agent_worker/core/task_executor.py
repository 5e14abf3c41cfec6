"""Task execution: prompt building and runner invocation for one task."""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from .config import Provider
from .task import Task, TaskResult
from ..runners.base import AgentRunner, RunnerOptions, describe_failure

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 2000
MAX_COMMENTS_IN_PROMPT = 20


def build_task_prompt(task: Task, provider: Provider) -> str:
    """
    Build the execution prompt for a task.

    Sections are separated by horizontal rules: task context (title,
    description, acceptance criteria), prior comments, then execution
    rules worded for the target CLI.
    """
    sections: List[str] = []

    context = [
        "# Task Context",
        "",
        f"## Task: {task.title}",
        "",
        task.description or "_No description provided._",
    ]
    if task.acceptance_checklist:
        context.append("\n## Acceptance Criteria\n")
        context.extend(f"- [{'x' if item.done else ' '}] {item.text}" for item in task.acceptance_checklist)
    sections.append("\n".join(context))

    if task.comments:
        # Most recent feedback matters most when a task is retried
        recent = task.comments[-MAX_COMMENTS_IN_PROMPT:]
        lines = ["# Comments and Feedback", ""]
        lines.extend(f"**{comment.author or 'unknown'}:** {comment.text}" for comment in recent)
        sections.append("\n".join(lines))

    sections.append(_execution_rules(provider))
    return "\n\n---\n\n".join(sections)


def _execution_rules(provider: Provider) -> str:
    rules = [
        "# Execution Rules",
        "",
        "- Implement the task completely in the current working directory.",
        "- Follow the existing code style and conventions of the repository.",
        "- Do not commit, push or create branches; version control is handled for you.",
        "- Do not modify files unrelated to the task.",
    ]
    if provider == Provider.CODEX:
        rules.append("- You are running non-interactively: never wait for confirmation, make reasonable decisions.")
        rules.append("- Run the relevant tests with the project's own tooling before finishing.")
    else:
        rules.append("- Use your tools to read the code before changing it, and run the relevant tests.")
    rules.append(
        "- Finish with a short plain-text summary of what you changed; it is posted on the task."
    )
    return "\n".join(rules)


def summarize_output(output: str, limit: int = MAX_SUMMARY_LENGTH) -> str:
    """Trimmed runner output suitable for a task comment; keeps the tail when too long."""
    text = (output or "").strip()
    if not text:
        return "Task completed."
    if len(text) > limit:
        text = "..." + text[-(limit - 3):]
    return text


class TaskExecutor:
    """Runs the configured AI CLI against one task.

    Never raises: runner failures and unexpected exceptions both become a
    failed TaskResult carrying the error text.
    """

    def __init__(
        self,
        runner: AgentRunner,
        project_path: Path,
        provider: Provider = Provider.CLAUDE,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.runner = runner
        self.project_path = Path(project_path)
        self.provider = provider
        self.model = model
        self.timeout = timeout
        self.on_progress = on_progress

    async def execute(self, task: Task, cwd: Optional[Path] = None) -> TaskResult:
        """
        Execute a task.

        Args:
            task: Full task detail, comments included
            cwd: Directory the agent works in (task worktree); defaults to the project path

        Returns:
            TaskResult with success flag and a summary for the task comment
        """
        prompt = build_task_prompt(task, self.provider)
        options = RunnerOptions(
            prompt=prompt,
            cwd=Path(cwd or self.project_path),
            model=self.model,
            activity=f"task {task.id}",
            on_tool_activity=lambda summary: logger.debug(f"[{self.runner.name}] {summary}"),
            on_status_change=self._report_status,
            timeout=self.timeout,
        )

        try:
            result = await self.runner.execute(options)
        except Exception as e:
            logger.exception(f"Runner {self.runner.name} raised while executing task {task.id}")
            return TaskResult(success=False, summary=f"Execution error: {e}")

        if result.success:
            return TaskResult(success=True, summary=summarize_output(result.output))

        error = describe_failure(result, self.runner.name)
        logger.warning(f"Runner {self.runner.name} failed for task {task.id}: {error}")
        return TaskResult(success=False, summary=error)

    def _report_status(self, status: str) -> None:
        if self.on_progress is not None:
            self.on_progress(f"[{self.runner.name}] {status}")
        else:
            logger.debug(f"[{self.runner.name}] {status}")
