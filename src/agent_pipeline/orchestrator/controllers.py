"""Controllers for agent pipeline CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_pipeline.config import Settings
from agent_pipeline.orchestrator.backend import (
    CliAgentRunner,
    DockerSandboxProvider,
    GitHubHost,
    GitWorkspace,
    LocalSandboxProvider,
    SandboxProvider,
)
from agent_pipeline.orchestrator.cleanup import CleanupCoordinator
from agent_pipeline.orchestrator.engine import OrchestrationEngine
from agent_pipeline.orchestrator.models import ProjectRef, SandboxLimits, Task, TaskStatus
from agent_pipeline.orchestrator.publication import PublicationStatus, PublicationTrigger
from agent_pipeline.orchestrator.repository import TaskStateStore
from agent_pipeline.orchestrator.resources import ResourceTracker


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for running one task."""

    db_path: Path | None
    project_path: Path
    description: str
    project_name: str | None = None
    image: str | None = None
    base_branch: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for sandbox cleanup."""

    db_path: Path | None
    task_id: str | None


@dataclass(slots=True)
class TaskCommand:
    """CLI input for publish/reject operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class StatusCommand:
    """CLI input for task inspection and listing."""

    db_path: Path | None
    task_id: str | None
    status: str | None = None
    limit: int = 20


@dataclass(slots=True)
class CommandResult:
    lines: list[str]
    success: bool


class PipelineCliController:
    """Coordinates task execution, cleanup, publication and inspection."""

    def run_task(self, command: RunTaskCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        project_path = command.project_path.resolve()
        project = ProjectRef(
            name=command.project_name or project_path.name,
            path=str(project_path),
            image=command.image or settings.sandbox.image,
            base_branch=command.base_branch or settings.github.base_branch,
            limits=SandboxLimits(
                memory=settings.sandbox.memory,
                cpus=settings.sandbox.cpus,
                network=settings.sandbox.network,
            ),
        )
        with _engine(settings) as engine:
            task = engine.run_task(project, command.description, task_id=command.task_id)
            events = engine.store.list_events(task.task_id)

        lines = _task_summary_lines(task)
        for event in events:
            if event.event_type in {"publication_failed", "publication_skipped"}:
                lines.append(f"Warning: {event.event_type}: {event.details.get('remediation')}")
        return CommandResult(lines=lines, success=task.status == TaskStatus.COMPLETED)

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            released = engine.cleanup(command.task_id)
        scope = f"task {command.task_id}" if command.task_id else "all tasks"
        lines = [f"Released sandboxes ({scope}): {len(released)}"]
        for handle in released:
            lines.append(f"  {handle.sandbox_id} task={handle.task_id} name={handle.name or '-'}")
        return lines

    def publish(self, command: TaskCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            outcome = engine.publish(command.task_id)

        if outcome.status in {PublicationStatus.PUBLISHED, PublicationStatus.ALREADY_PUBLISHED}:
            url = outcome.ref.url if outcome.ref is not None else "-"
            return CommandResult(
                lines=[f"Publication {outcome.status.value}: {url}"],
                success=True,
            )
        return CommandResult(
            lines=[f"Publication {outcome.status.value}: {outcome.warning or '-'}"],
            success=False,
        )

    def reject(self, command: TaskCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as engine:
            result = engine.reject(command.task_id)

        lines = [
            f"Task rejected: {result.task.task_id} status={result.task.status.value}",
            f"Released sandboxes: {len(result.released)}",
            f"Branch {result.task.branch_name} deleted: {'yes' if result.branch_deleted else 'no'}",
        ]
        if result.warning:
            lines.append(f"Warning: {result.warning}")
        return CommandResult(lines=lines, success=result.branch_deleted)

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            if command.task_id is None:
                tasks = store.list_tasks(status=_parse_status(command.status), limit=command.limit)
                lines = [f"Tasks: {len(tasks)}"]
                for task in tasks:
                    lines.append(
                        f"  {task.task_id} status={task.status.value} project={task.project} "
                        f"steps={len(task.steps)} cost=${task.cost_usd:.4f} "
                        f"created_at={task.created_at.isoformat()}",
                    )
                return lines

            task = store.require(command.task_id)
            events = store.list_events(command.task_id)

        lines = _task_summary_lines(task)
        lines.append(f"Steps: {len(task.steps)}")
        for index, step in enumerate(task.steps, start=1):
            directive = "-"
            if step.directive is not None:
                directive = step.directive.next_role or (
                    "approved" if step.directive.approved else "rejected"
                )
            lines.append(
                f"  {index}. {step.role} attempt={step.attempt} outcome={step.outcome.value} "
                f"next={directive} cost=${step.cost_usd:.4f}"
                + (f" error={step.error}" if step.error else ""),
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}")
        return lines


def _task_summary_lines(task: Task) -> list[str]:
    return [
        f"Task: {task.task_id}",
        f"Project: {task.project} ({task.project_path or '-'})",
        f"Status: {task.status.value}",
        f"Branch: {task.branch_name}",
        f"Cost: ${task.cost_usd:.4f}",
        f"Failure: {task.failure_reason or '-'}",
        f"Publication: {task.publication_ref.url if task.publication_ref else '-'}",
    ]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _build_provider(settings: Settings) -> SandboxProvider:
    if settings.sandbox.provider == "local":
        return LocalSandboxProvider(settings.workdir_root / "sandboxes")
    return DockerSandboxProvider()


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStateStore]:
    store = TaskStateStore(settings.db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _engine(settings: Settings) -> Iterator[OrchestrationEngine]:
    provider = _build_provider(settings)
    tracker = ResourceTracker(provider)
    coordinator = CleanupCoordinator(tracker)
    host = (
        GitHubHost(
            token=settings.github.token,
            repo=settings.github.repo,
            base_branch=settings.github.base_branch,
            api_url=settings.github.api_url,
        )
        if settings.github.enabled
        else None
    )
    with _store(settings) as store:
        try:
            yield OrchestrationEngine(
                store=store,
                tracker=tracker,
                provider=provider,
                runner=CliAgentRunner(
                    provider=provider,
                    command_template=settings.agent.command_template,
                    pricing=settings.agent.pricing,
                ),
                publisher=PublicationTrigger(store, host),
                workspace=GitWorkspace(base_branch=settings.github.base_branch),
                settings=settings,
                coordinator=coordinator,
            )
        finally:
            tracker.release_all()
            coordinator.uninstall()
            if host is not None:
                host.close()
