"""Local git branch operations for task work."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from agent_pipeline.orchestrator.errors import OrchestratorError

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 120.0


class GitOperationError(OrchestratorError):
    """A git command failed."""


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_git(repo_path: Path, *args: str, timeout: float = _GIT_TIMEOUT_SECONDS) -> GitResult:
    """Run git with list-form arguments in ``repo_path``."""

    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as error:
        raise GitOperationError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        command = args[0] if args else ""
        raise GitOperationError(f"git {command} timed out after {timeout:g}s") from error
    return GitResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


class GitWorkspace:
    """Creates, commits and deletes task branches in a local checkout."""

    def __init__(self, *, base_branch: str = "main", remote: str = "origin") -> None:
        self.base_branch = base_branch
        self.remote = remote

    def create_branch(self, project_path: Path, branch: str, base: str) -> None:
        result = run_git(project_path, "checkout", "-b", branch, base)
        if result.success:
            logger.info("Created branch %s from %s", branch, base)
            return
        if "invalid reference" in result.stderr or "not a commit" in result.stderr:
            logger.warning("Base branch %s not found; branching %s from HEAD", base, branch)
            fallback = run_git(project_path, "checkout", "-b", branch)
            if fallback.success:
                return
            result = fallback
        raise GitOperationError(f"git checkout -b {branch} failed: {result.stderr.strip()}")

    def commit_all(
        self,
        project_path: Path,
        message: str,
        *,
        exclude: Sequence[Path] = (),
    ) -> str:
        """Stage every change except ``exclude`` and commit.

        Returns the commit hash, or "" if there was nothing to commit.
        """

        pathspecs = _exclude_pathspecs(project_path, exclude)
        result = run_git(project_path, "add", "-A", "--", ".", *pathspecs)
        if not result.success:
            raise GitOperationError(f"git add -A failed: {result.stderr.strip()}")

        result = run_git(project_path, "commit", "-m", message)
        if not result.success:
            if "nothing to commit" in result.stdout:
                logger.info("Nothing to commit in %s", project_path)
                return ""
            raise GitOperationError(f"git commit failed: {result.stderr.strip()}")

        commit_hash = run_git(project_path, "rev-parse", "HEAD").stdout.strip()
        logger.info("Committed %s", commit_hash[:8])
        return commit_hash

    def delete_branch(self, project_path: Path, branch: str) -> None:
        current = run_git(project_path, "rev-parse", "--abbrev-ref", "HEAD")
        if current.success and current.stdout.strip() == branch:
            switched = run_git(project_path, "checkout", self.base_branch)
            if not switched.success:
                raise GitOperationError(
                    f"Cannot leave {branch} for {self.base_branch}: {switched.stderr.strip()}",
                )

        result = run_git(project_path, "branch", "-D", branch)
        if not result.success and "not found" not in result.stderr:
            raise GitOperationError(f"git branch -D {branch} failed: {result.stderr.strip()}")
        logger.info("Deleted local branch %s", branch)

        remotes = run_git(project_path, "remote")
        if self.remote not in remotes.stdout.split():
            return
        remote_result = run_git(project_path, "push", self.remote, "--delete", branch)
        if remote_result.success:
            logger.info("Deleted remote branch %s/%s", self.remote, branch)
        else:
            logger.warning(
                "Could not delete remote branch %s/%s: %s",
                self.remote,
                branch,
                remote_result.stderr.strip(),
            )


def _exclude_pathspecs(project_path: Path, paths: Sequence[Path]) -> list[str]:
    """Pathspecs excluding ``paths`` that live inside the checkout.

    A trailing ``*`` also drops siblings such as SQLite ``-wal``/``-journal`` files.
    """

    root = project_path.resolve()
    specs: list[str] = []
    for path in paths:
        try:
            relative = path.resolve().relative_to(root)
        except ValueError:
            continue
        if relative.parts:
            specs.append(f":(exclude){relative.as_posix()}*")
    return specs
