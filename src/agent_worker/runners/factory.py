"""Runner construction.

The strategy (direct or sandboxed, Claude or Codex) is fixed here, from
configuration, and never re-examined at runtime.
"""

import logging
from typing import Optional

from .base import AgentRunner
from .claude_runner import ClaudeRunner
from .codex_runner import CodexRunner
from .sandboxed import SandboxedClaudeRunner, SandboxedCodexRunner
from ..core.config import Provider
from ..sandbox.lifecycle import SandboxLifecycle

logger = logging.getLogger(__name__)


def create_runner(
    provider: Provider,
    model: Optional[str] = None,
    sandbox_lifecycle: Optional[SandboxLifecycle] = None,
) -> AgentRunner:
    """
    Build the runner for a provider.

    Args:
        provider: AI CLI to drive
        model: Model override passed to the CLI
        sandbox_lifecycle: When given, the CLI runs inside sandboxes from this lifecycle

    Returns:
        A configured AgentRunner
    """
    if sandbox_lifecycle is not None:
        if provider == Provider.CODEX:
            runner = SandboxedCodexRunner(sandbox_lifecycle, model)
        else:
            runner = SandboxedClaudeRunner(sandbox_lifecycle, model)
    elif provider == Provider.CODEX:
        runner = CodexRunner(model)
    else:
        runner = ClaudeRunner(model)

    logger.debug(f"Using runner {runner.name} (model={model or 'default'})")
    return runner
