"""Core models and configuration."""

from .task import (
    AcceptanceItem,
    CommitPushResult,
    HeartbeatState,
    Sprint,
    Task,
    TaskComment,
    TaskResult,
    TaskStatus,
)
from .config import Provider, WorkerConfig, WorkerSettings, load_settings, resolve_provider

__all__ = [
    "AcceptanceItem",
    "CommitPushResult",
    "HeartbeatState",
    "Sprint",
    "Task",
    "TaskComment",
    "TaskResult",
    "TaskStatus",
    "Provider",
    "WorkerConfig",
    "WorkerSettings",
    "load_settings",
    "resolve_provider",
]
