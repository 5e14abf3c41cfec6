"""Docker sandbox isolation for agent execution."""

from .lifecycle import (
    InvalidSandboxTransition,
    Sandbox,
    SandboxError,
    SandboxLifecycle,
    SandboxMode,
    SandboxRegistry,
    SandboxState,
    SandboxSupport,
    build_sandbox_name,
    create_sandbox,
    detect_sandbox_support,
    remove_sandbox,
    sandbox_exists,
)
from .sandbox_ignore import enforce_sandbox_ignore, parse_ignore_file, build_cleanup_script

__all__ = [
    "InvalidSandboxTransition",
    "Sandbox",
    "SandboxError",
    "SandboxLifecycle",
    "SandboxMode",
    "SandboxRegistry",
    "SandboxState",
    "SandboxSupport",
    "build_sandbox_name",
    "create_sandbox",
    "detect_sandbox_support",
    "remove_sandbox",
    "sandbox_exists",
    "enforce_sandbox_ignore",
    "parse_ignore_file",
    "build_cleanup_script",
]
