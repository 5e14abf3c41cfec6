"""HTTP client for the workspace API the worker claims tasks from."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.task import HeartbeatState, Sprint, Task

logger = logging.getLogger(__name__)


class ApiClientError(RuntimeError):
    """Raised when a workspace API request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NoTasksAvailable(ApiClientError):
    """Dispatch found nothing eligible; not an error condition for the run."""


class WorkspaceApiClient:
    """Async wrapper around the workspace endpoints used by an agent worker.

    Every httpx failure surfaces as ApiClientError, carrying the HTTP status
    when a response was received.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        """Close the underlying HTTP client when owned by this wrapper."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "WorkspaceApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- transport -------------------------------------------------------------

    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
            data = response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            raise ApiClientError(
                f"workspace API request failed: {method} {path}: {exc}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ApiClientError(f"workspace API request failed: {method} {path}: {exc}") from exc
        except ValueError as exc:
            raise ApiClientError(f"workspace API returned invalid JSON: {method} {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ApiClientError(
                f"workspace API returned {type(data).__name__} instead of an object: {method} {path}"
            )
        return data

    # --- tasks -------------------------------------------------------------------

    async def dispatch_next_task(
        self,
        workspace_id: str,
        agent_id: str,
        sprint_id: Optional[str] = None,
    ) -> Task:
        """
        Claim the next eligible backlog task for this agent.

        Raises:
            NoTasksAvailable: The server answered 404
            ApiClientError: Any other failure (network, 5xx, malformed body)
        """
        payload: Dict[str, Any] = {"workerId": agent_id}
        if sprint_id:
            payload["sprintId"] = sprint_id
        path = f"/workspaces/{workspace_id}/dispatch"
        try:
            data = await self._request("POST", path, json=payload)
        except ApiClientError as exc:
            if exc.status_code == 404:
                raise NoTasksAvailable("No tasks available", status_code=404) from exc
            raise
        return self._parse_task(data, path)

    async def get_task_detail(self, task_id: str, workspace_id: str) -> Task:
        path = f"/workspaces/{workspace_id}/tasks/{task_id}"
        return self._parse_task(await self._request("GET", path), path)

    async def update_task_status(self, task_id: str, workspace_id: str, patch: Dict[str, Any]) -> Optional[Task]:
        """
        PATCH status, assignee and/or PR URL. ``None`` values are sent as JSON null.

        Returns:
            The updated task when the server echoes it, otherwise None
        """
        path = f"/workspaces/{workspace_id}/tasks/{task_id}"
        data = await self._request("PATCH", path, json=patch)
        if "task" in data:
            return self._parse_task(data, path)
        return None

    async def add_task_comment(self, task_id: str, workspace_id: str, author: str, text: str) -> None:
        await self._request(
            "POST",
            f"/workspaces/{workspace_id}/tasks/{task_id}/comment",
            json={"author": author, "text": text},
        )

    # --- agents ------------------------------------------------------------------

    async def send_heartbeat(
        self,
        workspace_id: str,
        agent_id: str,
        current_task_id: Optional[str],
        state: HeartbeatState,
    ) -> None:
        await self._request(
            "POST",
            f"/workspaces/{workspace_id}/agents/heartbeat",
            json={"agentId": agent_id, "currentTaskId": current_task_id, "status": state.value},
        )

    # --- sprints -------------------------------------------------------------------

    async def get_sprint(self, sprint_id: str, workspace_id: str) -> Sprint:
        path = f"/workspaces/{workspace_id}/sprints/{sprint_id}"
        data = await self._request("GET", path)
        return self._parse_sprint(data.get("sprint", data), path)

    async def get_active_sprint(self, workspace_id: str) -> Optional[Sprint]:
        path = f"/workspaces/{workspace_id}/sprints/active"
        sprint = (await self._request("GET", path)).get("sprint")
        return self._parse_sprint(sprint, path) if sprint else None

    # --- parsing -------------------------------------------------------------------

    @staticmethod
    def _parse_sprint(sprint: Any, path: str) -> Sprint:
        if not isinstance(sprint, dict):
            raise ApiClientError(f"workspace API response for {path} has no sprint")
        try:
            return Sprint.model_validate(sprint)
        except ValueError as exc:
            raise ApiClientError(f"workspace API returned a malformed sprint for {path}: {exc}") from exc

    @staticmethod
    def _parse_task(data: Dict[str, Any], path: str) -> Task:
        task = data.get("task")
        if not isinstance(task, dict):
            raise ApiClientError(f"workspace API response for {path} has no task")
        try:
            return Task.model_validate(task)
        except ValueError as exc:
            raise ApiClientError(f"workspace API returned a malformed task for {path}: {exc}") from exc
