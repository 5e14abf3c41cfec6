"""GitHub integration: pull requests and operator lookup."""

from .client import GitHubClient
from .pr_service import PrCreationError, PrResult, PrService, build_pr_body, build_pr_title

__all__ = [
    "GitHubClient",
    "PrCreationError",
    "PrResult",
    "PrService",
    "build_pr_body",
    "build_pr_title",
]
