"""Exception types raised by the orchestration engine."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base error for orchestration failures."""


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskAlreadyExistsError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class InvalidStatusTransition(OrchestratorError):
    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Invalid status transition for task {task_id}: {current} -> {target}",
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class TaskNotCompletedError(OrchestratorError):
    """Manual publication was requested for a task that is not completed."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(f"task not completed: {task_id} (status: {status})")
        self.task_id = task_id
        self.status = status


class SandboxError(OrchestratorError):
    """Sandbox provider operation failed."""


class AgentRunError(OrchestratorError):
    """Agent process failed; carries its output streams for classification."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class PublicationError(OrchestratorError):
    """Push or change request creation failed."""
