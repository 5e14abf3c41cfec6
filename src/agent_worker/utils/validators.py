"""Validation utilities for branch names, identifiers, and GitHub remotes."""

import re
from typing import Optional, Tuple

_GITHUB_REMOTE_RE = re.compile(
    r'github\.com[:/](?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)(?:\.git)?/?$'
)


def validate_branch_name(branch_name: str) -> str:
    """
    Validate git branch name.

    Args:
        branch_name: Branch name to validate

    Returns:
        Validated branch name

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    # Strict whitelist
    if not re.match(r'^[a-zA-Z0-9/_.-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith('/') or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start or end with /")

    if '..' in branch_name or branch_name.endswith('.lock'):
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def validate_identifier(value: str, name: str = "identifier") -> str:
    """
    Validate agent or task identifiers used in worktree paths.

    Raises:
        ValueError: If identifier is empty or could escape the worktree root
    """
    if not value:
        raise ValueError(f"{name} cannot be empty")

    # Only allow alphanumeric, dash, underscore
    if not re.match(r'^[a-zA-Z0-9_-]+$', value):
        raise ValueError(f"Invalid {name}: {value}")

    if len(value) > 128:
        raise ValueError(f"{name} too long")

    return value


def parse_github_remote(remote_url: str) -> Optional[Tuple[str, str]]:
    """Return (owner, repo) for a GitHub remote URL, or None for other hosts.

    Accepts both ``git@github.com:owner/repo.git`` and
    ``https://github.com/owner/repo`` forms.
    """
    match = _GITHUB_REMOTE_RE.search(remote_url.strip())
    if not match:
        return None
    return match.group("owner"), match.group("repo")
