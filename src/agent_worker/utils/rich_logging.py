"""Rich logging with structured task context and better formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "agent_worker"


class AgentLogFormatter(logging.Formatter):
    """Custom formatter with agent, phase and task context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, agent_id: str, use_colors: bool = True):
        super().__init__()
        # Agent ids are long server-issued identifiers; the tail is enough to tell workers apart
        self.agent_label = agent_id[-8:]
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        task_context = ""
        if getattr(record, "task_id", None):
            task_context = f"[{record.task_id[:8]}] "

        phase_context = ""
        if getattr(record, "phase", None):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.agent_label}] {phase_context}{task_context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds task and phase context to all log messages."""

    PHASE_EMOJI = {
        "dispatching": "📥",
        "claimed": "📋",
        "isolating": "🌳",
        "executing": "🤖",
        "integrating": "💾",
        "reporting": "📊",
        "idle": "💤",
        "shutdown": "🛑",
    }

    def __init__(self, logger: logging.Logger, agent_id: str):
        super().__init__(logger, {})
        self.agent_id = agent_id
        self.current_task_id: Optional[str] = None
        self.current_phase: Optional[str] = None

    def set_task_context(self, task_id: Optional[str] = None, phase: Optional[str] = None):
        """Set current task context for logging."""
        if task_id:
            self.current_task_id = task_id
        if phase is not None:
            self.current_phase = phase

    def clear_context(self):
        """Clear task context."""
        self.current_task_id = None
        self.current_phase = None

    def process(self, msg, kwargs):
        """Add context to log record."""
        extra = dict(kwargs.get("extra") or {})
        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        if self.current_phase:
            extra["phase"] = self.current_phase
        kwargs["extra"] = extra
        return msg, kwargs

    def task_started(self, task_id: str, title: str):
        """Log task claim with context."""
        self.set_task_context(task_id=task_id)
        self.info(f"📋 Claimed: {title}")

    def phase_change(self, phase: str):
        """Log phase change."""
        self.set_task_context(phase=phase)
        emoji = self.PHASE_EMOJI.get(phase.lower(), "▶️")
        self.debug(f"{emoji} Phase: {phase}")

    def task_completed(self, title: str, duration_seconds: float):
        """Log task completion."""
        self.info(f"✅ Completed: {title} in {duration_seconds:.1f}s")
        self.clear_context()

    def task_failed(self, title: str, error: str):
        """Log task failure."""
        self.error(f"❌ Failed: {title} - {error}")
        self.clear_context()

    def progress(self, message: str):
        """Log progress update."""
        self.info(f"⏳ {message}")


def setup_rich_logging(
    agent_id: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
) -> ContextLogger:
    """
    Setup rich logging for a worker process.

    Handlers are attached to the package logger so every module logger
    (``logging.getLogger(__name__)``) is formatted with the agent label.

    Args:
        agent_id: Agent identifier
        workspace: Directory whose ``.agent-worker/logs`` receives the log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to log file

    Returns:
        ContextLogger for the worker orchestrator
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.propagate = False

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    use_colors = sys.stdout.isatty() if hasattr(sys.stdout, "isatty") else False
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(AgentLogFormatter(agent_id, use_colors=use_colors))
    logger.addHandler(console_handler)

    if use_file:
        log_dir = workspace / ".agent-worker" / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        # Use plain formatter for files (no ANSI codes)
        file_handler = logging.FileHandler(log_dir / f"{agent_id}.log")
        file_handler.setFormatter(AgentLogFormatter(agent_id, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logging.getLogger(f"{PACKAGE_LOGGER}.worker"), agent_id)
