from __future__ import annotations

import shutil
from pathlib import Path

import allure
import pytest

from agent_pipeline.orchestrator.backend.git_ops import GitOperationError, GitWorkspace, run_git
from agent_pipeline.orchestrator.backend.github_host import GitHubHost
from agent_pipeline.orchestrator.errors import PublicationError

pytestmark = [
    allure.epic("Publication"),
    allure.feature("Git Workspace"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def _git(repo: Path, *args: str) -> str:
    result = run_git(repo, *args)
    assert result.success, result.stderr
    return result.stdout


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "--initial-branch", "main")
    _git(path, "config", "user.email", "pipeline@example.test")
    _git(path, "config", "user.name", "Pipeline Tests")
    (path / "README.md").write_text("demo\n", "utf-8")
    _git(path, "add", "README.md")
    _git(path, "commit", "-m", "initial")
    return path


def test_branch_commit_and_delete(repo: Path) -> None:
    workspace = GitWorkspace(base_branch="main")

    workspace.create_branch(repo, "agent/t1", "main")
    (repo / "feature.py").write_text("VALUE = 1\n", "utf-8")
    commit = workspace.commit_all(repo, "Add feature\n\nTask: t1")

    assert len(commit) == 40
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "agent/t1"
    assert workspace.commit_all(repo, "nothing new") == ""

    workspace.delete_branch(repo, "agent/t1")

    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "main"
    assert "agent/t1" not in _git(repo, "branch", "--list")


def test_missing_base_falls_back_to_head(repo: Path) -> None:
    GitWorkspace().create_branch(repo, "agent/t2", "does-not-exist")

    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == "agent/t2"


def test_create_branch_outside_repository_fails(tmp_path: Path) -> None:
    outside = tmp_path / "plain"
    outside.mkdir()

    with pytest.raises(GitOperationError):
        GitWorkspace().create_branch(outside, "agent/t3", "main")


def test_push_branch_to_local_remote(repo: Path, tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", str(remote))
    _git(repo, "remote", "add", "origin", str(remote))
    GitWorkspace().create_branch(repo, "agent/t4", "main")
    host = GitHubHost(token="t", repo="acme/widgets")

    try:
        host.push_branch(repo, "agent/t4")
    finally:
        host.close()

    assert "agent/t4" in _git(remote, "branch", "--list")


def test_push_without_remote_raises_publication_error(repo: Path) -> None:
    host = GitHubHost(token="t", repo="acme/widgets")

    try:
        with pytest.raises(PublicationError, match="git push"):
            host.push_branch(repo, "main")
    finally:
        host.close()


def test_commit_all_skips_excluded_state_paths(repo: Path, tmp_path: Path) -> None:
    workspace = GitWorkspace(base_branch="main")
    workspace.create_branch(repo, "agent/t3", "main")
    (repo / "feature.py").write_text("VALUE = 3\n", "utf-8")
    (repo / ".pipeline.db").write_text("sqlite", "utf-8")
    (repo / ".pipeline.db-wal").write_text("wal", "utf-8")
    logs = repo / ".work" / "t3" / "logs"
    logs.mkdir(parents=True)
    (logs / "coder-attempt1.stdout.log").write_text("output", "utf-8")

    workspace.commit_all(
        repo,
        "Add feature",
        exclude=(repo / ".pipeline.db", repo / ".work", tmp_path / "elsewhere.db"),
    )

    assert _git(repo, "show", "--name-only", "--format=", "HEAD").split() == ["feature.py"]
    assert ".pipeline.db" in _git(repo, "status", "--porcelain", "--untracked-files=all")
