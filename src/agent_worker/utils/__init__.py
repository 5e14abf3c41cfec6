"""Shared utility functions for the agent worker."""

from .line_accumulator import LineAccumulator
from .subprocess_utils import (
    SubprocessError,
    run_command,
    run_git_command,
    run_command_async,
    check_command_exists,
    get_command_output,
)
from .process_utils import kill_process_tree
from .text import slugify, strip_ansi, strip_markdown_emphasis, first_line
from .validators import validate_branch_name, validate_identifier, parse_github_remote

__all__ = [
    # Stream parsing
    "LineAccumulator",
    # Subprocess utilities
    "SubprocessError",
    "run_command",
    "run_git_command",
    "run_command_async",
    "check_command_exists",
    "get_command_output",
    # Process management
    "kill_process_tree",
    # Text helpers
    "slugify",
    "strip_ansi",
    "strip_markdown_emphasis",
    "first_line",
    # Validators
    "validate_branch_name",
    "validate_identifier",
    "parse_github_remote",
]
