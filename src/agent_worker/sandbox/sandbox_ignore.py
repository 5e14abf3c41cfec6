"""Sandbox-ignore enforcement.

Parses ``.sandboxignore`` patterns (gitignore-like syntax) and removes
matching files and directories inside a docker sandbox before the agent
runs there. Best-effort: failures are logged, never raised.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from ..utils.subprocess_utils import SubprocessError, run_command_async

logger = logging.getLogger(__name__)

IGNORE_FILENAME = ".sandboxignore"
ENFORCE_TIMEOUT_SECONDS = 15


@dataclass(frozen=True)
class IgnoreRule:
    """One parsed ``.sandboxignore`` line."""
    pattern: str
    negated: bool = False
    is_directory: bool = False


def parse_ignore_file(path: Path) -> List[IgnoreRule]:
    """
    Parse an ignore file into rules.

    One pattern per line, ``#`` comments, ``!`` negation, trailing ``/``
    marks a directory. A missing file yields no rules.
    """
    if not path.exists():
        return []

    rules = []
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        pattern = line[1:] if negated else line
        is_directory = pattern.endswith("/")
        if is_directory:
            pattern = pattern[:-1]
        if pattern:
            rules.append(IgnoreRule(pattern=pattern, negated=negated, is_directory=is_directory))
    return rules


def _shell_quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def build_cleanup_script(rules: List[IgnoreRule], workspace_path: str) -> Optional[str]:
    """Translate rules into a ``find``-based removal script, or None if nothing to remove."""
    positive = [r for r in rules if not r.negated]
    if not positive:
        return None

    exclusions = " ".join(f"! -name {_shell_quote(r.pattern)}" for r in rules if r.negated)

    commands = []
    for rule in positive:
        parts = ["find", _shell_quote(workspace_path)]
        if rule.is_directory:
            parts.append("-type d")
        parts.append(f"-name {_shell_quote(rule.pattern)}")
        if exclusions:
            parts.append(exclusions)
        parts.append("-exec rm -rf {} +" if rule.is_directory else "-delete")
        commands.append(" ".join(parts))

    # ';' keeps one failing find from aborting the rest
    return " 2>/dev/null ; ".join(commands) + " 2>/dev/null"


async def enforce_sandbox_ignore(sandbox_name: str, project_root: Union[str, Path]) -> bool:
    """
    Remove ignored files from the sandbox's synced copy of ``project_root``.

    Returns:
        True when a cleanup script ran successfully, False when there was
        nothing to do or enforcement failed
    """
    project_root = str(project_root)
    rules = parse_ignore_file(Path(project_root) / IGNORE_FILENAME)
    if not rules:
        return False

    script = build_cleanup_script(rules, project_root)
    if not script:
        return False

    logger.debug(f"Enforcing {IGNORE_FILENAME} in {sandbox_name} ({len(rules)} rules)")
    try:
        await run_command_async(
            ["docker", "sandbox", "exec", sandbox_name, "sh", "-c", script],
            timeout=ENFORCE_TIMEOUT_SECONDS,
        )
    except SubprocessError as e:
        logger.debug(f"Sandbox-ignore enforcement failed for {sandbox_name} (non-fatal): {e}")
        return False

    logger.debug(f"Sandbox-ignore enforcement complete for {sandbox_name}")
    return True
