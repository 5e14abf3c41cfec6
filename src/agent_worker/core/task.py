"""Task model as served by the workspace API, plus worker-side result records."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(str, Enum):
    """Task status values understood by the workspace API."""
    BACKLOG = "BACKLOG"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    BLOCKED = "BLOCKED"
    DONE = "DONE"


class HeartbeatState(str, Enum):
    """Coarse worker state reported with each heartbeat."""
    IDLE = "IDLE"
    WORKING = "WORKING"
    COMPLETED = "COMPLETED"


class _ApiModel(BaseModel):
    # API payloads are camelCase; unknown fields are ignored so schema growth never breaks a worker
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AcceptanceItem(_ApiModel):
    """One acceptance-criteria checkbox."""
    id: Optional[str] = None
    text: str
    done: bool = False


class TaskComment(_ApiModel):
    """Comment left on a task by a human or an agent."""
    id: Optional[str] = None
    author: Optional[str] = None
    text: str = ""


class Task(_ApiModel):
    """Task owned by the workspace API.

    Read-only to the worker except for the status/assignee/PR-URL patch
    and comments.
    """
    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.BACKLOG
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo")
    sprint_id: Optional[str] = Field(default=None, alias="sprintId")
    pr_url: Optional[str] = Field(default=None, alias="prUrl")
    acceptance_checklist: List[AcceptanceItem] = Field(default_factory=list, alias="acceptanceChecklist")
    comments: List[TaskComment] = Field(default_factory=list)


class Sprint(_ApiModel):
    """Sprint reference used only for start-up logging."""
    id: str
    name: str = ""
    status: Optional[str] = None


@dataclass(frozen=True)
class TaskResult:
    """Outcome of executing (and integrating) one task."""
    success: bool
    summary: str
    branch: Optional[str] = None
    pr_url: Optional[str] = None
    pr_error: Optional[str] = None
    # Ran successfully but produced nothing to commit; distinct from failure
    no_changes: bool = False


@dataclass(frozen=True)
class CommitPushResult:
    """Classification of the commit/push step for one worktree."""
    branch: Optional[str] = None
    pushed: bool = False
    push_failed: bool = False
    push_error: Optional[str] = None
    skip_reason: Optional[str] = None
    no_changes: bool = False
    commit_hash: Optional[str] = None
