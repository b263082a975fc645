"""Task orchestration engine composing routing, retries, state and cleanup."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from agent_pipeline.config import Settings
from agent_pipeline.orchestrator.backend.base import (
    AgentRunner,
    AgentRunRequest,
    BranchWorkspace,
    SandboxProvider,
)
from agent_pipeline.orchestrator.cleanup import CleanupCoordinator
from agent_pipeline.orchestrator.errors import OrchestratorError
from agent_pipeline.orchestrator.invoker import (
    CancelToken,
    InvocationResult,
    RetryableInvoker,
    RetryPolicy,
    StepOutput,
)
from agent_pipeline.orchestrator.models import (
    ProjectRef,
    SandboxHandle,
    StepOutcome,
    StepRecord,
    Task,
    TaskStatus,
)
from agent_pipeline.orchestrator.publication import (
    PublicationOutcome,
    PublicationTrigger,
)
from agent_pipeline.orchestrator.repository import TaskStateStore
from agent_pipeline.orchestrator.resources import ResourceTracker
from agent_pipeline.orchestrator.routing import (
    APPROVE_TOKENS,
    DecisionKind,
    PipelineRouter,
    RoutingDecision,
)
from agent_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "agent/"
COST_LIMIT_REASON = "cost limit exceeded"
USER_REJECT_REASON = "rejected by user"
_PREVIOUS_OUTPUT_MAX_CHARS = 4_000


@dataclass(slots=True)
class RejectResult:
    """Outcome of a user rejection."""

    task: Task
    released: list[SandboxHandle]
    branch_deleted: bool
    warning: str | None = None


@dataclass(slots=True)
class _PendingDecision:
    decision: RoutingDecision | None = None


class _RoleUnit:
    """Unit of work running one role through the agent runner."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        runner: AgentRunner,
        task: Task,
        role: str,
        prompt: str,
        model: str,
        sandbox: SandboxHandle,
        log_dir: Path,
    ) -> None:
        self.runner = runner
        self.task = task
        self.role = role
        self.prompt = prompt
        self.model = model
        self.sandbox = sandbox
        self.log_dir = log_dir
        self.attempts = 0

    def __call__(self, token: CancelToken) -> StepOutput:
        self.attempts += 1
        result = self.runner.run(
            AgentRunRequest(
                task_id=self.task.task_id,
                role=self.role,
                prompt=self.prompt,
                model=self.model,
                sandbox=self.sandbox,
                log_dir=self.log_dir,
                attempt=self.attempts,
                token=token,
            ),
        )
        return StepOutput(output=result.output, cost_usd=result.cost_usd)


class OrchestrationEngine:
    """Runs tasks through the role pipeline and owns their lifecycle."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStateStore,
        tracker: ResourceTracker,
        provider: SandboxProvider,
        runner: AgentRunner,
        publisher: PublicationTrigger,
        workspace: BranchWorkspace,
        settings: Settings,
        coordinator: CleanupCoordinator | None = None,
        router: PipelineRouter | None = None,
        invoker: RetryableInvoker | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.provider = provider
        self.runner = runner
        self.publisher = publisher
        self.workspace = workspace
        self.settings = settings
        self.coordinator = coordinator
        self.router = router or PipelineRouter(max_steps=settings.step.max_steps)
        self.invoker = invoker or RetryableInvoker()
        self.policy = RetryPolicy(
            timeout_seconds=settings.step.timeout_seconds,
            max_attempts=settings.step.max_attempts,
            backoff_seconds=settings.step.backoff_seconds,
            grace_seconds=settings.step.grace_seconds,
        )

    def run_task(
        self,
        project: ProjectRef,
        description: str,
        *,
        task_id: str | None = None,
    ) -> Task:
        """Run one task to a terminal status and publish it when completed."""

        if not description.strip():
            raise ValueError("Task description must not be empty.")
        if self.coordinator is not None:
            self.coordinator.install()

        resolved_id = task_id or uuid4().hex[:12]
        task = Task(
            task_id=resolved_id,
            description=description.strip(),
            project=project.name,
            status=TaskStatus.EXECUTING,
            branch_name=f"{BRANCH_PREFIX}{resolved_id}",
            project_path=str(Path(project.path).resolve()),
        )
        self.store.create(task)
        logger.info("Task %s started on %s (%s)", task.task_id, project.name, task.branch_name)

        handle: SandboxHandle | None = None
        try:
            try:
                self.workspace.create_branch(
                    Path(task.project_path),
                    task.branch_name,
                    project.base_branch,
                )
            except OrchestratorError as error:
                self._finish(task, TaskStatus.FAILED, f"branch creation failed: {error}")
                return task

            try:
                handle = self.provider.create(
                    project.image,
                    project.limits,
                    task_id=task.task_id,
                    workdir=Path(task.project_path),
                )
            except OrchestratorError as error:
                self._finish(task, TaskStatus.FAILED, f"sandbox creation failed: {error}")
                return task
            self.tracker.register(handle)

            self._run_pipeline(task, handle)
            if task.status == TaskStatus.COMPLETED:
                self._commit_work(task)
        except Exception as error:
            if task.status == TaskStatus.EXECUTING:
                self._finish(task, TaskStatus.FAILED, f"internal error: {error}")
            raise
        finally:
            if handle is not None:
                self.tracker.release(handle)

        if task.status == TaskStatus.COMPLETED:
            outcome = self.publisher.publish_on_completion(task, task.project_path)
            if outcome.warning:
                logger.warning(
                    "Task %s completed without publication: %s",
                    task.task_id,
                    outcome.warning,
                )
        return task

    def cleanup(self, task_id: str | None = None) -> list[SandboxHandle]:
        """Release tracked sandboxes of one task (or all) plus provider orphans."""

        if task_id is None:
            released = self.tracker.release_all()
        else:
            released = self.tracker.release_for_task(task_id)

        try:
            listed = self.provider.list_sandboxes()
        except OrchestratorError as error:
            logger.warning("Could not list sandboxes for orphan cleanup: %s", error)
            return released

        for orphan in listed:
            if task_id is not None and orphan.task_id != task_id:
                continue
            if orphan in self.tracker:
                continue
            try:
                self.provider.stop(orphan)
                self.provider.remove(orphan)
            except OrchestratorError as error:
                logger.warning("Failed to remove orphaned sandbox %s: %s", orphan.sandbox_id, error)
                continue
            logger.info("Removed orphaned sandbox %s (task %s)", orphan.sandbox_id, orphan.task_id)
            released.append(orphan)
        return released

    def publish(self, task_id: str) -> PublicationOutcome:
        """Manual publication retry for a completed task."""

        return self.publisher.retry(task_id)

    def reject(self, task_id: str) -> RejectResult:
        """Force a task to failed, release its sandbox and delete its branch."""

        task = self.store.require(task_id)
        if task.status != TaskStatus.FAILED:
            self._finish(task, TaskStatus.FAILED, USER_REJECT_REASON)
        else:
            logger.info("Task %s already failed (%s)", task_id, task.failure_reason)
        self.store.add_event(task_id, "rejected", {"reason": USER_REJECT_REASON})

        released = self.tracker.release_for_task(task_id)
        try:
            self.workspace.delete_branch(Path(task.project_path), task.branch_name)
        except OrchestratorError as error:
            warning = f"branch {task.branch_name} was not deleted: {error}"
            logger.warning("Reject of task %s: %s", task_id, warning)
            self.store.add_event(task_id, "branch_delete_failed", {"error": str(error)})
            return RejectResult(task=task, released=released, branch_deleted=False, warning=warning)
        return RejectResult(task=task, released=released, branch_deleted=True)

    def status(self, task_id: str) -> Task:
        return self.store.require(task_id)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        return self.store.list_tasks(status=status, limit=limit)

    def _run_pipeline(self, task: Task, handle: SandboxHandle) -> None:
        role = self.router.first()
        log_dir = self.settings.workdir_root / task.task_id / "logs"

        while True:
            pending = _PendingDecision()
            unit = _RoleUnit(
                runner=self.runner,
                task=task,
                role=role,
                prompt=build_role_prompt(task, role, self.router.roles),
                model=self.settings.agent.model,
                sandbox=handle,
                log_dir=log_dir,
            )
            result = self.invoker.invoke(
                unit,
                self.policy,
                role=role,
                on_attempt=lambda step: self._record_attempt(task, step, pending),
            )

            if not result.ok:
                self._fail_step(task, result)
                return
            if self._cost_exceeded(task):
                self._finish(task, TaskStatus.FAILED, COST_LIMIT_REASON)
                return

            decision = pending.decision
            if decision is None:
                raise OrchestratorError(f"No routing decision recorded for {role} step")
            if decision.kind == DecisionKind.COMPLETE:
                self._finish(task, TaskStatus.COMPLETED, None)
                return
            if decision.kind == DecisionKind.REJECT:
                self._finish(task, TaskStatus.FAILED, f"rejected by {role}: {decision.reason}")
                return
            if decision.kind == DecisionKind.NOT_CONVERGED:
                self._finish(task, TaskStatus.FAILED, decision.reason)
                return

            logger.info(
                "Task %s: %s -> %s (%s)",
                task.task_id,
                role,
                decision.role,
                decision.reason,
            )
            role = str(decision.role)

    def _record_attempt(self, task: Task, step: StepRecord, pending: _PendingDecision) -> None:
        if step.outcome == StepOutcome.SUCCESS:
            decision = self.router.decide([*task.steps, step], step.output)
            pending.decision = decision
            if decision.directive is not None:
                step = dataclasses.replace(step, directive=decision.directive)
            if decision.anomaly is not None:
                self.store.add_event(
                    task.task_id,
                    "routing_anomaly",
                    {"role": step.role, "anomaly": decision.anomaly},
                )
        task.append_step(step)
        self.store.update(task)

    def _fail_step(self, task: Task, result: InvocationResult) -> None:
        failure = result.failure
        if failure is None:
            self._finish(task, TaskStatus.FAILED, "step failed without diagnostics")
            return
        self.store.add_event(
            task.task_id,
            "step_failed",
            {
                **failure.diagnostics,
                "role": failure.role,
                "attempts": failure.attempts,
                "failure_class": failure.failure_class.value,
                "error": failure.error,
                "remediation": failure.remediation,
            },
        )
        self._finish(task, TaskStatus.FAILED, failure.describe())

    def _cost_exceeded(self, task: Task) -> bool:
        limit = self.settings.step.max_cost_usd
        if limit is None or task.cost_usd <= limit:
            return False
        logger.warning(
            "Task %s cost $%.4f exceeds limit $%.4f",
            task.task_id,
            task.cost_usd,
            limit,
        )
        return True

    def _commit_work(self, task: Task) -> None:
        message = f"{task.description.splitlines()[0]}\n\nTask: {task.task_id}"
        try:
            self.workspace.commit_all(
                Path(task.project_path),
                message,
                exclude=(self.settings.db_path, self.settings.workdir_root),
            )
        except OrchestratorError as error:
            logger.warning("Could not commit work for task %s: %s", task.task_id, error)
            self.store.add_event(task.task_id, "commit_failed", {"error": str(error)})

    def _finish(self, task: Task, status: TaskStatus, reason: str | None) -> None:
        task.status = status
        if status == TaskStatus.FAILED:
            task.failure_reason = reason
        task.updated_at = utc_now()
        self.store.update(task)
        if status == TaskStatus.FAILED:
            logger.warning("Task %s failed: %s", task.task_id, reason)
        else:
            logger.info("Task %s %s", task.task_id, status.value)


def build_role_prompt(task: Task, role: str, roles: Sequence[str]) -> str:
    """Compose the prompt for ``role`` from the goal and prior step outputs."""

    sections = [
        f"You are the {role} agent in a multi-agent coding pipeline.",
        "",
        "## Task",
        task.description,
    ]
    previous = [step for step in task.steps if step.outcome == StepOutcome.SUCCESS]
    if previous:
        sections.extend(["", "## Previous steps"])
        for step in previous:
            output = step.output.strip()
            if len(output) > _PREVIOUS_OUTPUT_MAX_CHARS:
                output = output[-_PREVIOUS_OUTPUT_MAX_CHARS:]
            sections.extend(["", f"### {step.role}", output])
    approve = " | ".join(sorted(token.upper() for token in APPROVE_TOKENS))
    sections.extend(
        [
            "",
            "## Routing",
            "Finish your answer with two lines:",
            f"NEXT: <one of {', '.join(roles)}> | {approve} | REJECT",
            "REASON: <one sentence>",
            "Omit them to continue with the default order.",
        ],
    )
    return "\n".join(sections) + "\n"
