"""Best-effort, idempotent change request publication for completed tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from agent_pipeline.orchestrator.backend.base import RemoteHost
from agent_pipeline.orchestrator.errors import TaskNotCompletedError
from agent_pipeline.orchestrator.models import ChangeRequestRef, StepOutcome, Task, TaskStatus
from agent_pipeline.orchestrator.repository import TaskStateStore

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 72


class PublicationStatus(str, Enum):
    PUBLISHED = "published"
    ALREADY_PUBLISHED = "already_published"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class PublicationOutcome:
    """Result of one publication attempt. Failures carry a warning, never raise."""

    status: PublicationStatus
    ref: ChangeRequestRef | None = None
    warning: str | None = None


def remediation_for_task(task_id: str) -> str:
    return f"retry manual publication for task {task_id}"


class PublicationTrigger:
    """Pushes the task branch and opens a change request exactly once."""

    def __init__(self, store: TaskStateStore, host: RemoteHost | None) -> None:
        self.store = store
        self.host = host

    def publish_on_completion(self, task: Task, project_path: Path | str) -> PublicationOutcome:
        if task.publication_ref is not None:
            logger.info("Task %s already published: %s", task.task_id, task.publication_ref.url)
            return PublicationOutcome(
                status=PublicationStatus.ALREADY_PUBLISHED,
                ref=task.publication_ref,
            )

        remediation = remediation_for_task(task.task_id)
        if self.host is None:
            warning = f"no remote host configured; {remediation}"
            logger.warning("Publication skipped for task %s: %s", task.task_id, warning)
            self.store.add_event(
                task.task_id,
                "publication_skipped",
                {"reason": "no_remote_host", "remediation": remediation},
            )
            return PublicationOutcome(status=PublicationStatus.SKIPPED, warning=warning)

        try:
            self.host.push_branch(Path(project_path), task.branch_name)
            ref = self.host.create_change_request(
                branch=task.branch_name,
                title=build_change_request_title(task),
                body=build_change_request_body(task),
            )
            task.publication_ref = ref
            self.store.update(task)
        except Exception as error:  # noqa: BLE001
            # An unsaved ref is dropped; the host reuses the open change request on retry.
            task.publication_ref = None
            warning = f"publication failed: {error}; {remediation}"
            logger.warning(
                "Publication failed for task %s: %s (%s)",
                task.task_id,
                error,
                remediation,
            )
            self._record_event(
                task.task_id,
                "publication_failed",
                {
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "remediation": remediation,
                },
            )
            return PublicationOutcome(status=PublicationStatus.FAILED, warning=warning)

        self._record_event(task.task_id, "published", {"url": ref.url, "id": ref.id})
        logger.info("Published task %s: %s", task.task_id, ref.url)
        return PublicationOutcome(status=PublicationStatus.PUBLISHED, ref=ref)

    def retry(self, task_id: str, project_path: Path | str | None = None) -> PublicationOutcome:
        """Manual publication entry point for completed tasks only."""

        task = self.store.require(task_id)
        if task.status != TaskStatus.COMPLETED:
            raise TaskNotCompletedError(task_id, task.status.value)
        return self.publish_on_completion(task, project_path or task.project_path)

    def _record_event(self, task_id: str, event_type: str, details: dict[str, object]) -> None:
        try:
            self.store.add_event(task_id, event_type, details)
        except Exception as error:  # noqa: BLE001
            logger.warning("Could not record %s event for task %s: %s", event_type, task_id, error)


def build_change_request_title(task: Task) -> str:
    stripped = task.description.strip()
    first_line = stripped.splitlines()[0] if stripped else task.task_id
    if len(first_line) > _TITLE_MAX_CHARS:
        first_line = first_line[: _TITLE_MAX_CHARS - 3].rstrip() + "..."
    return first_line


def build_change_request_body(task: Task) -> str:
    lines = [
        "## Goal",
        "",
        task.description.strip(),
        "",
        "## Steps",
        "",
        "| # | Role | Outcome | Attempt | Cost (USD) |",
        "|---|------|---------|---------|------------|",
    ]
    for index, step in enumerate(task.steps, start=1):
        lines.append(
            f"| {index} | {step.role} | {step.outcome.value} | {step.attempt} "
            f"| {step.cost_usd:.4f} |",
        )
    succeeded = [step.role for step in task.steps if step.outcome == StepOutcome.SUCCESS]
    lines.extend(
        [
            "",
            f"Roles completed: {', '.join(succeeded) if succeeded else 'none'}",
            f"Total cost: ${task.cost_usd:.4f}",
            f"Task: `{task.task_id}` on branch `{task.branch_name}`",
        ],
    )
    return "\n".join(lines) + "\n"
