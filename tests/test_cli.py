from __future__ import annotations

import shlex
import shutil
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_pipeline.main import agent_pipeline
from agent_pipeline.orchestrator.backend.git_ops import run_git

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("CLI"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]

_ECHO_AGENT_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_pipeline.orchestrator.backend.echo_agent "
    "--role {role} --prompt-file {prompt_file}"
)


@pytest.fixture()
def git_project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    for args in (
        ("init", "--initial-branch", "main"),
        ("config", "user.email", "pipeline@example.test"),
        ("config", "user.name", "Pipeline Tests"),
        ("commit", "--allow-empty", "-m", "initial"),
    ):
        result = run_git(path, *args)
        assert result.success, result.stderr
    return path


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("AGENT_PIPELINE_SANDBOX_PROVIDER", "local")
    monkeypatch.setenv("AGENT_PIPELINE_WORKDIR_ROOT", str(tmp_path / "work"))
    monkeypatch.setenv("AGENT_PIPELINE_AGENT_COMMAND_TEMPLATE", _ECHO_AGENT_TEMPLATE)
    monkeypatch.setenv("AGENT_PIPELINE_STEP_TIMEOUT_SECONDS", "60")
    monkeypatch.delenv("AGENT_PIPELINE_GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("AGENT_PIPELINE_GITHUB_REPO", raising=False)
    return tmp_path / "pipeline.db"


def test_run_status_reject_and_cleanup(git_project: Path, cli_env: Path) -> None:
    runner = CliRunner()
    db = str(cli_env)

    run = runner.invoke(
        agent_pipeline,
        ["run", str(git_project), "Add a health endpoint", "--db-path", db, "--task-id", "cli-1"],
    )
    assert run.exit_code == 0, run.output
    assert "Status: completed" in run.output
    assert "Branch: agent/cli-1" in run.output
    assert "publication_skipped" in run.output

    listing = runner.invoke(agent_pipeline, ["status", "--db-path", db, "--status", "completed"])
    assert listing.exit_code == 0, listing.output
    assert "cli-1 status=completed" in listing.output

    detail = runner.invoke(agent_pipeline, ["status", "cli-1", "--db-path", db])
    assert detail.exit_code == 0, detail.output
    assert "Steps: 7" in detail.output
    assert "architect attempt=1 outcome=success" in detail.output

    reject = runner.invoke(agent_pipeline, ["reject", "cli-1", "--db-path", db])
    assert reject.exit_code == 0, reject.output
    assert "status=failed" in reject.output
    assert "agent/cli-1" not in run_git(git_project, "branch", "--list").stdout

    publish = runner.invoke(agent_pipeline, ["publish", "cli-1", "--db-path", db])
    assert publish.exit_code != 0
    assert "task not completed" in publish.output

    cleanup = runner.invoke(agent_pipeline, ["cleanup", "--all", "--db-path", db])
    assert cleanup.exit_code == 0, cleanup.output
    assert "Released sandboxes (all tasks): 0" in cleanup.output


def test_status_of_unknown_task_fails(cli_env: Path) -> None:
    result = CliRunner().invoke(agent_pipeline, ["status", "missing", "--db-path", str(cli_env)])

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output


def test_cleanup_requires_task_or_all(cli_env: Path) -> None:
    result = CliRunner().invoke(agent_pipeline, ["cleanup", "--db-path", str(cli_env)])

    assert result.exit_code == 2
    assert "TASK_ID or --all" in result.output


def test_failed_task_exits_non_zero(git_project: Path, cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv(
        "AGENT_PIPELINE_AGENT_COMMAND_TEMPLATE",
        f"{_ECHO_AGENT_TEMPLATE} --fail-with 'permission denied'",
    )

    result = CliRunner().invoke(
        agent_pipeline,
        ["run", str(git_project), "Doomed", "--db-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "Status: failed" in result.output
    assert "architect step failed after 1 attempt(s)" in result.output


@pytest.mark.parametrize(
    "state_env",
    [
        {
            "AGENT_PIPELINE_DB_PATH": ".agent_pipeline.db",
            "AGENT_PIPELINE_WORKDIR_ROOT": ".agent_pipeline/work",
        },
        {},
    ],
    ids=["state-inside-project", "default-state-dir"],
)
def test_run_from_project_dir_commits_only_agent_changes(
    git_project: Path,
    cli_env: Path,
    tmp_path: Path,
    monkeypatch,
    state_env: dict[str, str],
) -> None:
    monkeypatch.chdir(git_project)
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    monkeypatch.delenv("AGENT_PIPELINE_DB_PATH", raising=False)
    monkeypatch.delenv("AGENT_PIPELINE_WORKDIR_ROOT", raising=False)
    for name, value in state_env.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv(
        "AGENT_PIPELINE_AGENT_COMMAND_TEMPLATE",
        f"{_ECHO_AGENT_TEMPLATE} --write-file roles.txt",
    )

    result = CliRunner().invoke(agent_pipeline, ["run", ".", "Add endpoint", "--task-id", "p1"])

    assert result.exit_code == 0, result.output
    changed = run_git(git_project, "show", "--name-only", "--format=", "agent/p1").stdout
    assert changed.split() == ["roles.txt"]
    if not state_env:
        assert (tmp_path / "state" / "agent_pipeline" / "pipeline.db").exists()
