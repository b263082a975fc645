from __future__ import annotations

import allure
import pytest

from agent_pipeline.orchestrator.errors import (
    PublicationError,
    TaskNotCompletedError,
    TaskNotFoundError,
)
from agent_pipeline.orchestrator.models import StepOutcome, StepRecord, Task, TaskStatus
from agent_pipeline.orchestrator.publication import (
    PublicationStatus,
    PublicationTrigger,
    build_change_request_body,
    build_change_request_title,
)
from agent_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Publication"),
    allure.feature("Publication Trigger"),
]


def _completed_task(store, task_id: str = "task-1") -> Task:
    now = utc_now()
    task = Task(
        task_id=task_id,
        description="Add retry to the HTTP client\n\nUse exponential backoff.",
        project="demo",
        status=TaskStatus.EXECUTING,
        branch_name=f"agent/{task_id}",
        project_path="/tmp/demo",
    )
    store.create(task)
    task.append_step(
        StepRecord(
            role="coder",
            started_at=now,
            ended_at=now,
            outcome=StepOutcome.SUCCESS,
            attempt=1,
            cost_usd=0.125,
        ),
    )
    task.status = TaskStatus.COMPLETED
    store.update(task)
    return task


def test_publish_pushes_and_stores_reference(store, host) -> None:
    task = _completed_task(store)
    trigger = PublicationTrigger(store, host)

    outcome = trigger.publish_on_completion(task, task.project_path)

    assert outcome.status == PublicationStatus.PUBLISHED
    assert outcome.ref is not None
    assert host.pushed[0][1] == "agent/task-1"
    assert host.change_requests[0]["title"] == "Add retry to the HTTP client"
    stored = store.require("task-1")
    assert stored.publication_ref == outcome.ref
    assert stored.status == TaskStatus.COMPLETED
    assert "published" in [event.event_type for event in store.list_events("task-1")]


def test_publishing_twice_creates_one_change_request(store, host) -> None:
    task = _completed_task(store)
    trigger = PublicationTrigger(store, host)

    first = trigger.publish_on_completion(task, task.project_path)
    second = trigger.retry("task-1")

    assert first.status == PublicationStatus.PUBLISHED
    assert second.status == PublicationStatus.ALREADY_PUBLISHED
    assert second.ref == first.ref
    assert len(host.change_requests) == 1


def test_push_failure_is_a_warning_not_a_task_failure(store, host) -> None:
    task = _completed_task(store)
    host.push_error = PublicationError("remote rejected push")
    trigger = PublicationTrigger(store, host)

    outcome = trigger.publish_on_completion(task, task.project_path)

    assert outcome.status == PublicationStatus.FAILED
    assert outcome.warning is not None
    assert "retry manual publication for task task-1" in outcome.warning
    assert host.change_requests == []
    stored = store.require("task-1")
    assert stored.status == TaskStatus.COMPLETED
    assert stored.publication_ref is None
    failed = [e for e in store.list_events("task-1") if e.event_type == "publication_failed"]
    assert failed[0].details["remediation"] == "retry manual publication for task task-1"
    assert failed[0].details["error_type"] == "PublicationError"


def test_retry_after_failure_publishes(store, host) -> None:
    task = _completed_task(store)
    host.push_error = PublicationError("offline")
    trigger = PublicationTrigger(store, host)
    trigger.publish_on_completion(task, task.project_path)

    host.push_error = None
    outcome = trigger.retry("task-1")

    assert outcome.status == PublicationStatus.PUBLISHED
    assert store.require("task-1").publication_ref is not None


def test_retry_refuses_tasks_that_are_not_completed(store, host) -> None:
    store.create(
        Task(
            task_id="running",
            description="in progress",
            project="demo",
            status=TaskStatus.EXECUTING,
            branch_name="agent/running",
        ),
    )
    trigger = PublicationTrigger(store, host)

    with pytest.raises(TaskNotCompletedError, match="task not completed"):
        trigger.retry("running")
    with pytest.raises(TaskNotFoundError):
        trigger.retry("missing")
    assert host.pushed == []


def test_missing_host_skips_with_warning(store) -> None:
    task = _completed_task(store)
    trigger = PublicationTrigger(store, None)

    outcome = trigger.publish_on_completion(task, task.project_path)

    assert outcome.status == PublicationStatus.SKIPPED
    assert "retry manual publication" in (outcome.warning or "")
    assert store.require("task-1").publication_ref is None


def test_change_request_text_summarises_task(store) -> None:
    task = _completed_task(store)
    task.description = "x" * 100

    title = build_change_request_title(task)
    body = build_change_request_body(task)

    assert len(title) == 72
    assert title.endswith("...")
    assert "| 1 | coder | success | 1 | 0.1250 |" in body
    assert "Total cost: $0.1250" in body
    assert "Roles completed: coder" in body


def test_store_failure_after_change_request_is_a_warning(store, host, monkeypatch) -> None:
    task = _completed_task(store)
    trigger = PublicationTrigger(store, host)

    def _broken_update(_task: Task) -> None:
        raise OSError("database is locked")

    monkeypatch.setattr(store, "update", _broken_update)

    outcome = trigger.publish_on_completion(task, task.project_path)

    assert outcome.status == PublicationStatus.FAILED
    assert "database is locked" in (outcome.warning or "")
    assert "retry manual publication for task task-1" in (outcome.warning or "")
    assert task.publication_ref is None
    assert len(host.change_requests) == 1
    events = [event.event_type for event in store.list_events(task.task_id)]
    assert "publication_failed" in events
