"""Domain models for task orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agent_pipeline.storage.common import utc_now


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepOutcome(str, Enum):
    """Outcome of one recorded agent attempt."""

    SUCCESS = "success"
    FAILURE = "failure"
    RETRIED = "retried"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    NETWORK_TRANSIENT = "network_transient"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    NOT_FOUND = "not_found"
    MALFORMED_INPUT = "malformed_input"
    NON_RETRYABLE = "non_retryable"
    UNKNOWN = "unknown"


RETRYABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {
        FailureClass.TIMEOUT,
        FailureClass.NETWORK_TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.UNKNOWN,
    },
)

# Legal status moves. completed -> failed is reserved for the user reject command.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset(),
}


def is_transition_allowed(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when moving from current to target keeps status monotonic."""

    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class RoutingDirective:
    """Next-role signal embedded in agent output."""

    next_role: str | None
    reason: str
    approved: bool = False
    rejected: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "next_role": self.next_role,
            "reason": self.reason,
            "approved": self.approved,
            "rejected": self.rejected,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> RoutingDirective:
        next_role = payload.get("next_role")
        return cls(
            next_role=next_role if isinstance(next_role, str) else None,
            reason=str(payload.get("reason") or ""),
            approved=bool(payload.get("approved")),
            rejected=bool(payload.get("rejected")),
        )


@dataclass(frozen=True, slots=True)
class StepRecord:
    """One attempt of one agent step. Immutable once appended to a task."""

    role: str
    started_at: datetime
    ended_at: datetime
    outcome: StepOutcome
    attempt: int
    output: str = ""
    directive: RoutingDirective | None = None
    cost_usd: float = 0.0
    failure_class: FailureClass | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ChangeRequestRef:
    """Reference to a published change request on the remote host."""

    url: str
    id: str


@dataclass(frozen=True, slots=True)
class SandboxHandle:
    """Opaque identity of one isolated execution environment."""

    sandbox_id: str
    task_id: str
    created_at: datetime
    name: str = ""


@dataclass(frozen=True, slots=True)
class SandboxLimits:
    """Resource limits applied when a sandbox is created."""

    memory: str = "4g"
    cpus: float = 2.0
    network: str = "none"


@dataclass(slots=True)
class ProjectRef:
    """Project a task operates on."""

    name: str
    path: str
    image: str = "python:3.12-slim"
    base_branch: str = "main"
    limits: SandboxLimits = field(default_factory=SandboxLimits)


@dataclass(slots=True)
class Task:
    """Task lifecycle record owned by the task state store."""

    task_id: str
    description: str
    project: str
    status: TaskStatus
    branch_name: str
    project_path: str = ""
    steps: list[StepRecord] = field(default_factory=list)
    cost_usd: float = 0.0
    publication_ref: ChangeRequestRef | None = None
    failure_reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def append_step(self, step: StepRecord) -> None:
        """Append one attempt record in execution order."""

        if self.steps and step.started_at < self.steps[-1].started_at:
            raise ValueError("Step records must be appended in execution order.")
        self.steps.append(step)
        self.cost_usd += step.cost_usd
        self.updated_at = utc_now()


@dataclass(slots=True)
class TaskEventView:
    """Audit trail entry for one task."""

    event_id: int
    task_id: str
    event_type: str
    created_at: datetime
    details: dict[str, object] = field(default_factory=dict)
