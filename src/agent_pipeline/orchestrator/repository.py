"""Durable task state store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from sqlalchemy import func
from sqlmodel import Session, col, select

from agent_pipeline.orchestrator.errors import (
    InvalidStatusTransition,
    OrchestratorError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
)
from agent_pipeline.orchestrator.models import (
    ChangeRequestRef,
    FailureClass,
    RoutingDirective,
    StepOutcome,
    StepRecord,
    Task,
    TaskEventView,
    TaskStatus,
    is_transition_allowed,
)
from agent_pipeline.storage.alembic_runner import upgrade_head
from agent_pipeline.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_pipeline.storage.sqlmodel_models import (
    PipelineTask,
    PipelineTaskEvent,
    PipelineTaskStep,
)

logger = logging.getLogger(__name__)


class TaskStateStore:
    """Task lifecycle persistence; one writer at a time per store."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._write_lock = threading.Lock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create(self, task: Task) -> Task:
        """Persist a new task. Raises TaskAlreadyExistsError on id collision."""

        with self._write_lock, Session(self.engine) as session:
            existing = session.get(PipelineTask, task.task_id)
            if existing is not None:
                raise TaskAlreadyExistsError(task.task_id)
            row = PipelineTask(
                task_id=task.task_id,
                description=task.description,
                project=task.project,
                status=task.status.value,
                branch_name=task.branch_name,
                created_at=to_db_datetime(task.created_at),
                updated_at=to_db_datetime(task.updated_at),
            )
            _apply_task_fields(row, task)
            session.add(row)
            session.flush()
            for index, step in enumerate(task.steps):
                session.add(_to_step_row(task.task_id, index, step))
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="created",
                details={
                    "project": task.project,
                    "status": task.status.value,
                    "branch_name": task.branch_name,
                },
            )
            session.commit()
        logger.info("Created task %s (%s)", task.task_id, task.project)
        return task

    def update(self, task: Task) -> Task:
        """Overwrite task fields and append steps beyond the persisted count."""

        with self._write_lock, Session(self.engine) as session:
            row = session.get(PipelineTask, task.task_id)
            if row is None:
                raise TaskNotFoundError(task.task_id)

            current = TaskStatus(row.status)
            if not is_transition_allowed(current, task.status):
                raise InvalidStatusTransition(task.task_id, current.value, task.status.value)
            if row.publication_url is not None and (
                task.publication_ref is None or task.publication_ref.url != row.publication_url
            ):
                raise OrchestratorError(
                    f"Task {task.task_id} already has publication {row.publication_url}",
                )

            persisted = session.exec(
                select(func.count())
                .select_from(PipelineTaskStep)
                .where(PipelineTaskStep.task_id == task.task_id),
            ).one()
            if len(task.steps) < persisted:
                raise OrchestratorError(
                    f"Step history for task {task.task_id} is append-only: "
                    f"{persisted} persisted, {len(task.steps)} given",
                )
            for index in range(persisted, len(task.steps)):
                session.add(_to_step_row(task.task_id, index, task.steps[index]))

            _apply_task_fields(row, task)
            session.add(row)
            if current != task.status:
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="status_changed",
                    details={
                        "status_from": current.value,
                        "status_to": task.status.value,
                        "reason": task.failure_reason,
                    },
                )
            session.commit()
        return task

    def get(self, task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.get(PipelineTask, task_id)
            if row is None:
                return None
            step_rows = session.exec(
                select(PipelineTaskStep)
                .where(PipelineTaskStep.task_id == task_id)
                .order_by(col(PipelineTaskStep.step_index).asc()),
            ).all()
            return _to_task(row, step_rows)

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        """Return recent tasks, newest first."""

        with Session(self.engine) as session:
            query = select(PipelineTask)
            if status is not None:
                query = query.where(PipelineTask.status == status.value)
            rows = session.exec(
                query.order_by(col(PipelineTask.created_at).desc()).limit(max(1, limit)),
            ).all()
            tasks: list[Task] = []
            for row in rows:
                step_rows = session.exec(
                    select(PipelineTaskStep)
                    .where(PipelineTaskStep.task_id == row.task_id)
                    .order_by(col(PipelineTaskStep.step_index).asc()),
                ).all()
                tasks.append(_to_task(row, step_rows))
            return tasks

    def add_event(self, task_id: str, event_type: str, details: dict[str, object]) -> None:
        """Append one audit event for an existing task."""

        with self._write_lock, Session(self.engine) as session:
            if session.get(PipelineTask, task_id) is None:
                raise TaskNotFoundError(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                details=details,
            )
            session.commit()

    def list_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PipelineTaskEvent)
                .where(PipelineTaskEvent.task_id == task_id)
                .order_by(
                    col(PipelineTaskEvent.created_at).asc(),
                    col(PipelineTaskEvent.id).asc(),
                ),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            details: dict[str, object] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=int(row.id or 0),
                    task_id=row.task_id,
                    event_type=row.event_type,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def _add_event(
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        session.add(
            PipelineTaskEvent(
                task_id=task_id,
                event_type=event_type,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _apply_task_fields(row: PipelineTask, task: Task) -> None:
    row.description = task.description
    row.project = task.project
    row.project_path = task.project_path
    row.status = task.status.value
    row.branch_name = task.branch_name
    row.cost_usd = task.cost_usd
    row.publication_url = task.publication_ref.url if task.publication_ref else None
    row.publication_id = task.publication_ref.id if task.publication_ref else None
    row.failure_reason = task.failure_reason
    row.updated_at = to_db_datetime(task.updated_at)


def _to_step_row(task_id: str, index: int, step: StepRecord) -> PipelineTaskStep:
    return PipelineTaskStep(
        task_id=task_id,
        step_index=index,
        role=step.role,
        started_at=to_db_datetime(step.started_at),
        ended_at=to_db_datetime(step.ended_at),
        outcome=step.outcome.value,
        attempt=step.attempt,
        output=step.output,
        directive_json=json.dumps(step.directive.to_dict(), sort_keys=True)
        if step.directive is not None
        else None,
        cost_usd=step.cost_usd,
        failure_class=step.failure_class.value if step.failure_class is not None else None,
        error=step.error,
    )


def _to_step(row: PipelineTaskStep) -> StepRecord:
    directive = None
    if row.directive_json:
        parsed = json.loads(row.directive_json)
        if isinstance(parsed, dict):
            directive = RoutingDirective.from_dict(parsed)
    return StepRecord(
        role=row.role,
        started_at=to_utc_aware_datetime(row.started_at),
        ended_at=to_utc_aware_datetime(row.ended_at),
        outcome=StepOutcome(row.outcome),
        attempt=row.attempt,
        output=row.output,
        directive=directive,
        cost_usd=row.cost_usd,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error=row.error,
    )


def _to_task(row: PipelineTask, step_rows: list[PipelineTaskStep]) -> Task:
    publication_ref = None
    if row.publication_url is not None:
        publication_ref = ChangeRequestRef(url=row.publication_url, id=row.publication_id or "")
    return Task(
        task_id=row.task_id,
        description=row.description,
        project=row.project,
        status=TaskStatus(row.status),
        branch_name=row.branch_name,
        project_path=row.project_path,
        steps=[_to_step(step_row) for step_row in step_rows],
        cost_usd=row.cost_usd,
        publication_ref=publication_ref,
        failure_reason=row.failure_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
