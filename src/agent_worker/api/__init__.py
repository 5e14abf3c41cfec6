"""Workspace API client."""

from .client import ApiClientError, NoTasksAvailable, WorkspaceApiClient

__all__ = ["ApiClientError", "NoTasksAvailable", "WorkspaceApiClient"]
