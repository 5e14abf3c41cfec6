"""GitHub API client for operator lookup and PR queries."""

from typing import Optional

from github import Auth, Github
from github.PullRequest import PullRequest
from github.Repository import Repository


class GitHubClient:
    """Thin PyGithub wrapper used when a GitHub token is configured."""

    def __init__(self, token: str, owner: Optional[str] = None, repo: Optional[str] = None):
        self.owner = owner
        self.repo_name = repo
        self.gh = Github(auth=Auth.Token(token))
        self._repo: Optional[Repository] = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            if not (self.owner and self.repo_name):
                raise ValueError("GitHubClient needs owner and repo for repository operations")
            self._repo = self.gh.get_repo(f"{self.owner}/{self.repo_name}")
        return self._repo

    def get_login(self) -> str:
        """Login of the token's user."""
        return self.gh.get_user().login

    def get_pr_by_branch(self, branch_name: str) -> Optional[PullRequest]:
        """Open PR whose head is ``branch_name``, if any."""
        pulls = self.repo.get_pulls(state="open", head=f"{self.owner}:{branch_name}")
        for pr in pulls:
            return pr
        return None
