"""Pull request creation through the GitHub CLI.

PRs are opened with ``gh pr create`` from the project checkout. When a
GitHub token is configured, PyGithub is used for lookups that ``gh``
would otherwise answer (operator login, an already-open PR).
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from github import GithubException

from .client import GitHubClient
from ...core.task import Task
from ...utils.subprocess_utils import SubprocessError, check_command_exists, run_command, run_git_command
from ...utils.validators import parse_github_remote

logger = logging.getLogger(__name__)

PR_TITLE_PREFIX = "[Locus]"
GH_TIMEOUT_SECONDS = 60

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class PrCreationError(RuntimeError):
    """A pull request could not be opened."""


@dataclass(frozen=True)
class PrResult:
    url: str
    number: int


def build_pr_title(task: Task) -> str:
    return f"{PR_TITLE_PREFIX} {task.title}"


def build_pr_body(task: Task, agent_id: str, summary: Optional[str] = None) -> str:
    """Markdown PR body: task, description, acceptance criteria, agent summary, footer."""
    sections = [f"## Task: {task.title}", ""]

    if task.description:
        sections.extend([task.description, ""])

    if task.acceptance_checklist:
        sections.append("## Acceptance Criteria")
        sections.extend(f"- [ ] {item.text}" for item in task.acceptance_checklist)
        sections.append("")

    if summary:
        sections.extend(["## Agent Summary", summary, ""])

    sections.append("---")
    sections.append(f"*Created by Locus Agent `{agent_id[-8:]}`* | Task ID: `{task.id}`")
    return "\n".join(sections)


def build_consolidated_pr_body(
    tasks: Sequence[Task],
    agent_id: str,
    summaries: Optional[dict] = None,
) -> str:
    """Body for one PR covering every task completed on the shared checkout."""
    summaries = summaries or {}
    sections = [f"## Tasks ({len(tasks)})", ""]
    for task in tasks:
        sections.append(f"### {task.title}")
        sections.append(f"Task ID: `{task.id}`")
        summary = summaries.get(task.id)
        if summary:
            sections.extend(["", summary])
        sections.append("")

    sections.append("---")
    sections.append(f"*Created by Locus Agent `{agent_id[-8:]}`*")
    return "\n".join(sections)


def extract_pr_number(url: str) -> int:
    match = _PR_NUMBER_RE.search(url)
    return int(match.group(1)) if match else 0


class PrService:
    """Opens pull requests for task branches of one repository."""

    def __init__(self, project_path: Path, github_token: Optional[str] = None):
        self.project_path = Path(project_path)
        self.github_token = github_token
        self._github: Optional[GitHubClient] = None

    # --- environment -----------------------------------------------------------

    def github_repo(self) -> Optional[Tuple[str, str]]:
        """(owner, repo) of the origin remote when it is hosted on GitHub."""
        result = run_git_command(["remote", "get-url", "origin"], cwd=self.project_path, check=False)
        if result.returncode != 0:
            return None
        return parse_github_remote(result.stdout.strip())

    def is_gh_available(self) -> bool:
        """``gh`` is installed and authenticated."""
        if not check_command_exists("gh"):
            return False
        try:
            result = run_command(["gh", "auth", "status"], cwd=self.project_path, check=False, timeout=15)
        except SubprocessError:
            return False
        return result.returncode == 0

    def _github_client(self) -> Optional[GitHubClient]:
        if not self.github_token:
            return None
        if self._github is None:
            owner_repo = self.github_repo()
            owner, repo = owner_repo if owner_repo else (None, None)
            self._github = GitHubClient(self.github_token, owner, repo)
        return self._github

    def get_operator_login(self) -> Optional[str]:
        """GitHub login of the human running the worker, for commit co-authorship."""
        client = self._github_client()
        if client is not None:
            try:
                return client.get_login()
            except GithubException as e:
                logger.warning(f"Could not resolve GitHub user via API: {e}")
                return None

        if not check_command_exists("gh"):
            return None
        try:
            result = run_command(["gh", "api", "user", "--jq", ".login"], check=False, timeout=15)
        except SubprocessError as e:
            logger.debug(f"gh api user failed: {e}")
            return None
        login = result.stdout.strip()
        return login if result.returncode == 0 and login else None

    def default_branch(self) -> str:
        """origin's HEAD branch, falling back to main/master."""
        result = run_git_command(
            ["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=self.project_path, check=False, timeout=10
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().split("/")[-1]

        for branch in ("main", "master"):
            remote_ref = run_git_command(
                ["rev-parse", "--verify", "--quiet", f"origin/{branch}"],
                cwd=self.project_path,
                check=False,
                timeout=10,
            )
            if remote_ref.returncode == 0:
                return branch
        return "main"

    # --- preflight -------------------------------------------------------------

    def _has_remote_branch(self, branch: str) -> bool:
        result = run_git_command(
            ["ls-remote", "--exit-code", "--heads", "origin", branch],
            cwd=self.project_path,
            check=False,
            timeout=GH_TIMEOUT_SECONDS,
        )
        return result.returncode == 0

    def _resolve_branch_ref(self, branch: str) -> Optional[str]:
        for ref, resolved in ((f"refs/heads/{branch}", branch), (f"refs/remotes/origin/{branch}", f"origin/{branch}")):
            result = run_git_command(["show-ref", "--verify", "--quiet", ref], cwd=self.project_path, check=False)
            if result.returncode == 0:
                return resolved
        return None

    def _commits_ahead(self, base_ref: str, head_ref: str) -> int:
        result = run_git_command(
            ["rev-list", "--count", f"{base_ref}..{head_ref}"], cwd=self.project_path, check=False
        )
        value = result.stdout.strip()
        return int(value) if result.returncode == 0 and value.isdigit() else 0

    def _validate_branches(self, base_branch: str, head_branch: str) -> None:
        if not self._has_remote_branch(base_branch):
            raise PrCreationError(f'Base branch "{base_branch}" does not exist on origin. Push/fetch refs and retry.')
        if not self._has_remote_branch(head_branch):
            raise PrCreationError(
                f'Head branch "{head_branch}" is not available on origin. Ensure it is pushed before PR creation.'
            )

        base_ref = self._resolve_branch_ref(base_branch)
        head_ref = self._resolve_branch_ref(head_branch)
        if not base_ref:
            raise PrCreationError(f'Could not resolve base branch "{base_branch}" locally.')
        if not head_ref:
            raise PrCreationError(f'Could not resolve head branch "{head_branch}" locally.')

        if self._commits_ahead(base_ref, head_ref) <= 0:
            raise PrCreationError(f'No commits between "{base_branch}" and "{head_branch}". Skipping PR creation.')

    def _check_prerequisites(self) -> None:
        if self.github_repo() is None:
            raise PrCreationError("PR creation is only supported for GitHub repositories")
        if not self.is_gh_available():
            raise PrCreationError(
                "GitHub CLI (gh) is not installed or not authenticated. Install from https://cli.github.com/"
            )

    # --- creation ----------------------------------------------------------------

    def create_pr(
        self,
        task: Task,
        branch: str,
        agent_id: str,
        summary: Optional[str] = None,
        base_branch: Optional[str] = None,
    ) -> PrResult:
        """
        Open a PR for a pushed task branch.

        Raises:
            PrCreationError: If the repository, ``gh`` or the branches are not
                ready, or ``gh pr create`` fails
        """
        return self._open_pr(build_pr_title(task), build_pr_body(task, agent_id, summary), branch, base_branch)

    def create_consolidated_pr(
        self,
        tasks: List[Task],
        branch: str,
        agent_id: str,
        summaries: Optional[dict] = None,
        base_branch: Optional[str] = None,
    ) -> PrResult:
        """Open one PR covering several tasks completed on a shared run branch."""
        if not tasks:
            raise PrCreationError("No tasks to include in the pull request")
        if len(tasks) == 1:
            title = build_pr_title(tasks[0])
        else:
            title = f"{PR_TITLE_PREFIX} {len(tasks)} tasks by agent {agent_id[-8:]}"
        return self._open_pr(title, build_consolidated_pr_body(tasks, agent_id, summaries), branch, base_branch)

    def _open_pr(self, title: str, body: str, branch: str, base_branch: Optional[str]) -> PrResult:
        self._check_prerequisites()
        base_branch = base_branch or self.default_branch()
        self._validate_branches(base_branch, branch)

        logger.info(f"Creating PR: {title} ({branch} -> {base_branch})")
        try:
            result = run_command(
                ["gh", "pr", "create", "--title", title, "--body", body, "--base", base_branch, "--head", branch],
                cwd=self.project_path,
                timeout=GH_TIMEOUT_SECONDS,
            )
        except SubprocessError as e:
            if "already exists" in e.stderr:
                existing = self._find_existing_pr(branch)
                if existing:
                    logger.info(f"PR already exists: {existing}")
                    return PrResult(url=existing, number=extract_pr_number(existing))
            raise PrCreationError(f"gh pr create failed: {e.stderr.strip() or e}") from e

        # gh prints the PR URL last
        lines = result.stdout.strip().splitlines()
        url = lines[-1].strip() if lines else ""
        if not url:
            raise PrCreationError("gh pr create did not return a PR URL")
        logger.info(f"PR created: {url}")
        return PrResult(url=url, number=extract_pr_number(url))

    def _find_existing_pr(self, branch: str) -> Optional[str]:
        client = self._github_client()
        if client is not None and client.owner:
            try:
                pr = client.get_pr_by_branch(branch)
            except GithubException as e:
                logger.warning(f"Could not look up existing PR for {branch}: {e}")
                return None
            return pr.html_url if pr else None

        result = run_command(
            ["gh", "pr", "view", branch, "--json", "url", "--jq", ".url"],
            cwd=self.project_path,
            check=False,
            timeout=GH_TIMEOUT_SECONDS,
        )
        url = result.stdout.strip()
        return url if result.returncode == 0 and url else None
