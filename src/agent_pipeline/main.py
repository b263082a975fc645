"""CLI entrypoint for agent-pipeline."""

import logging
from pathlib import Path

import rich_click as click

from agent_pipeline import __version__
from agent_pipeline.orchestrator.controllers import (
    CleanupCommand,
    PipelineCliController,
    RunTaskCommand,
    StatusCommand,
    TaskCommand,
)
from agent_pipeline.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="agent-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity (written to stderr).",
)
def agent_pipeline(log_level: str) -> None:
    """Run coding tasks through a pipeline of sandboxed agent roles."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@agent_pipeline.command("run")
@click.argument("project_path", type=click.Path(path_type=Path, exists=True, file_okay=False))
@click.argument("description")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-name", default=None, help="Project name (defaults to directory name).")
@click.option("--image", default=None, help="Sandbox image override.")
@click.option("--base-branch", default=None, help="Branch the work branch is created from.")
@click.option("--task-id", default=None, help="Explicit task id (must be unique).")
def run_task(  # noqa: PLR0913
    project_path: Path,
    description: str,
    db_path: Path | None,
    project_name: str | None,
    image: str | None,
    base_branch: str | None,
    task_id: str | None,
) -> None:
    """Run one task through the role pipeline and publish it on completion."""

    try:
        result = PIPELINE_CONTROLLER.run_task(
            RunTaskCommand(
                db_path=db_path,
                project_path=project_path,
                description=description,
                project_name=project_name,
                image=image,
                base_branch=base_branch,
                task_id=task_id,
            ),
        )
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Task did not complete.")


@agent_pipeline.command("cleanup")
@click.argument("task_id", required=False)
@click.option("--all", "all_tasks", is_flag=True, help="Release sandboxes of every task.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cleanup(task_id: str | None, all_tasks: bool, db_path: Path | None) -> None:
    """Release sandboxes of one task, or of all tasks with `--all`."""

    if task_id is None and not all_tasks:
        raise click.UsageError("Pass TASK_ID or --all.")
    if task_id is not None and all_tasks:
        raise click.UsageError("TASK_ID and --all are mutually exclusive.")
    _emit_lines(PIPELINE_CONTROLLER.cleanup(CleanupCommand(db_path=db_path, task_id=task_id)))


@agent_pipeline.command("publish")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def publish(task_id: str, db_path: Path | None) -> None:
    """Retry publication of a completed task."""

    try:
        result = PIPELINE_CONTROLLER.publish(TaskCommand(db_path=db_path, task_id=task_id))
    except OrchestratorError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Publication failed.")


@agent_pipeline.command("reject")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def reject(task_id: str, db_path: Path | None) -> None:
    """Fail a task, release its sandbox and delete its work branch."""

    try:
        result = PIPELINE_CONTROLLER.reject(TaskCommand(db_path=db_path, task_id=task_id))
    except OrchestratorError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Work branch was not deleted.")


@agent_pipeline.command("status")
@click.argument("task_id", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["executing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Filter listing by status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max tasks to list.",
)
def status(task_id: str | None, db_path: Path | None, status: str | None, limit: int) -> None:
    """Show one task with steps and events, or list recent tasks."""

    try:
        lines = PIPELINE_CONTROLLER.status(
            StatusCommand(db_path=db_path, task_id=task_id, status=status, limit=limit),
        )
    except OrchestratorError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_pipeline()
