"""Tests for the task model as served by the workspace API."""

from agent_worker.core.task import CommitPushResult, HeartbeatState, Task, TaskResult, TaskStatus


def test_task_from_api_payload():
    """camelCase API fields map onto the model."""
    task = Task.model_validate({
        "id": "t-1",
        "title": "Add health check endpoint",
        "description": "Expose /health",
        "status": "IN_PROGRESS",
        "assignedTo": "agent-1",
        "sprintId": "s-1",
        "prUrl": None,
        "acceptanceChecklist": [{"id": "a1", "text": "Returns 200", "done": False}],
        "comments": [{"author": "alice", "text": "Use the existing router"}],
    })

    assert task.status == TaskStatus.IN_PROGRESS
    assert task.assigned_to == "agent-1"
    assert task.sprint_id == "s-1"
    assert task.acceptance_checklist[0].text == "Returns 200"
    assert task.comments[0].author == "alice"


def test_task_defaults():
    """Only id and title are required."""
    task = Task.model_validate({"id": "t-2", "title": "Minimal"})

    assert task.description is None
    assert task.status == TaskStatus.BACKLOG
    assert task.acceptance_checklist == []
    assert task.comments == []


def test_unknown_fields_ignored():
    """Schema growth on the server never breaks parsing."""
    task = Task.model_validate({"id": "t-3", "title": "x", "priority": "HIGH", "labels": ["a"]})
    assert task.id == "t-3"


def test_populate_by_field_name():
    """Snake-case names are accepted too."""
    task = Task(id="t-4", title="x", assigned_to="agent-9")
    assert task.assigned_to == "agent-9"


def test_status_values_match_api():
    """Status and heartbeat values are the API's upper-case strings."""
    assert TaskStatus.IN_REVIEW.value == "IN_REVIEW"
    assert HeartbeatState.WORKING.value == "WORKING"


def test_result_records_default_to_nothing_happened():
    """Result records start without branch, PR or failure flags."""
    result = TaskResult(success=True, summary="done")
    assert result.branch is None
    assert result.pr_url is None
    assert result.no_changes is False

    commit = CommitPushResult()
    assert not commit.pushed
    assert not commit.push_failed
    assert commit.branch is None
