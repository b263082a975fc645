"""Adapter interfaces used by the orchestration engine."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from agent_pipeline.orchestrator.models import ChangeRequestRef, SandboxHandle, SandboxLimits

if TYPE_CHECKING:
    from agent_pipeline.orchestrator.invoker import CancelToken


@dataclass(slots=True)
class SandboxCommand:
    """Host-side argv that runs a command inside a sandbox."""

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    task_id: str
    role: str
    prompt: str
    model: str
    sandbox: SandboxHandle
    log_dir: Path
    attempt: int = 1
    token: CancelToken | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from an agent runner."""

    output: str
    exit_code: int = 0
    stderr: str = ""
    cost_usd: float = 0.0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None


class SandboxProvider(Protocol):
    """Creates and destroys isolated execution environments."""

    def create(
        self,
        image: str,
        limits: SandboxLimits,
        *,
        task_id: str,
        workdir: Path | None = None,
    ) -> SandboxHandle:
        """Create and start a sandbox; raises SandboxError on failure."""

    def stop(self, handle: SandboxHandle) -> None:
        """Stop the sandbox; stopping a stopped sandbox is not an error."""

    def remove(self, handle: SandboxHandle) -> None:
        """Remove the sandbox; removing a missing sandbox is not an error."""

    def execute(self, handle: SandboxHandle, argv: list[str], *, timeout: float) -> str:
        """Run a command to completion inside the sandbox and return stdout."""

    def command_for(self, handle: SandboxHandle, argv: list[str]) -> SandboxCommand:
        """Return host argv that runs ``argv`` inside the sandbox."""

    def list_sandboxes(self) -> list[SandboxHandle]:
        """List sandboxes this provider manages, live or orphaned."""


class AgentRunner(Protocol):
    """Runs one agent role against a sandbox."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run an attempt; raises AgentRunError on non-zero exit."""


class RemoteHost(Protocol):
    """Remote code host receiving pushed branches and change requests."""

    def push_branch(self, project_path: Path, branch: str) -> None:
        """Push the local branch to the remote."""

    def create_change_request(self, *, branch: str, title: str, body: str) -> ChangeRequestRef:
        """Open a change request for ``branch`` and return its reference."""


class BranchWorkspace(Protocol):
    """Local branch management for task work."""

    def create_branch(self, project_path: Path, branch: str, base: str) -> None:
        """Create and check out ``branch`` from ``base``."""

    def commit_all(
        self,
        project_path: Path,
        message: str,
        *,
        exclude: Sequence[Path] = (),
    ) -> str:
        """Stage and commit all changes outside ``exclude``; returns the hash or "" when clean."""

    def delete_branch(self, project_path: Path, branch: str) -> None:
        """Delete ``branch`` locally and remotely where present."""
