"""Shared test fixtures and in-process adapter fakes."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from agent_pipeline.config import Settings, StepSettings
from agent_pipeline.orchestrator.backend.base import (
    AgentRunRequest,
    AgentRunResult,
    SandboxCommand,
)
from agent_pipeline.orchestrator.backend.git_ops import GitOperationError
from agent_pipeline.orchestrator.errors import SandboxError
from agent_pipeline.orchestrator.models import ChangeRequestRef, SandboxHandle, SandboxLimits
from agent_pipeline.orchestrator.repository import TaskStateStore
from agent_pipeline.storage.common import utc_now

Response = str | AgentRunResult | BaseException | Callable[[AgentRunRequest], AgentRunResult]


class FakeProvider:
    """Sandbox provider recording every lifecycle call."""

    def __init__(self) -> None:
        self.created: list[SandboxHandle] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.orphans: list[SandboxHandle] = []
        self.fail_create: str | None = None
        self.fail_remove: set[str] = set()

    def create(
        self,
        image: str,
        limits: SandboxLimits,
        *,
        task_id: str,
        workdir: Path | None = None,
    ) -> SandboxHandle:
        if self.fail_create is not None:
            raise SandboxError(self.fail_create)
        handle = SandboxHandle(
            sandbox_id=f"fake-{task_id}-{len(self.created) + 1}",
            task_id=task_id,
            created_at=utc_now(),
            name=image,
        )
        self.created.append(handle)
        return handle

    def stop(self, handle: SandboxHandle) -> None:
        self.stopped.append(handle.sandbox_id)

    def remove(self, handle: SandboxHandle) -> None:
        if handle.sandbox_id in self.fail_remove:
            raise SandboxError(f"cannot remove {handle.sandbox_id}")
        self.removed.append(handle.sandbox_id)

    def execute(self, handle: SandboxHandle, argv: list[str], *, timeout: float) -> str:
        return ""

    def command_for(self, handle: SandboxHandle, argv: list[str]) -> SandboxCommand:
        return SandboxCommand(argv=list(argv))

    def list_sandboxes(self) -> list[SandboxHandle]:
        live = [handle for handle in self.created if handle.sandbox_id not in self.removed]
        orphans = [handle for handle in self.orphans if handle.sandbox_id not in self.removed]
        return live + orphans


class ScriptedRunner:
    """Agent runner replaying queued responses per role.

    Roles without queued responses succeed with ``default_output``.
    """

    def __init__(self, default_output: str = "ok", default_cost: float = 0.0) -> None:
        self.default_output = default_output
        self.default_cost = default_cost
        self.responses: dict[str, list[Response]] = {}
        self.calls: list[AgentRunRequest] = []

    def script(self, role: str, *responses: Response) -> None:
        self.responses.setdefault(role, []).extend(responses)

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.calls.append(request)
        queued = self.responses.get(request.role)
        if not queued:
            return AgentRunResult(output=self.default_output, cost_usd=self.default_cost)
        response = queued.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, AgentRunResult):
            return response
        if isinstance(response, str):
            return AgentRunResult(output=response, cost_usd=self.default_cost)
        return response(request)

    def roles_called(self) -> list[str]:
        return [call.role for call in self.calls]


class FakeHost:
    """Remote host opening numbered change requests."""

    def __init__(self) -> None:
        self.pushed: list[tuple[Path, str]] = []
        self.change_requests: list[dict[str, str]] = []
        self.push_error: Exception | None = None

    def push_branch(self, project_path: Path, branch: str) -> None:
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append((project_path, branch))

    def create_change_request(self, *, branch: str, title: str, body: str) -> ChangeRequestRef:
        self.change_requests.append({"branch": branch, "title": title, "body": body})
        number = len(self.change_requests)
        return ChangeRequestRef(url=f"https://git.example.test/pulls/{number}", id=str(number))


class FakeWorkspace:
    """Branch workspace recording calls without touching git."""

    def __init__(self) -> None:
        self.created: list[tuple[str, str]] = []
        self.commits: list[str] = []
        self.excluded: list[list[Path]] = []
        self.deleted: list[str] = []
        self.fail_create: str | None = None
        self.fail_delete: str | None = None

    def create_branch(self, project_path: Path, branch: str, base: str) -> None:
        if self.fail_create is not None:
            raise GitOperationError(self.fail_create)
        self.created.append((branch, base))

    def commit_all(
        self,
        project_path: Path,
        message: str,
        *,
        exclude: Sequence[Path] = (),
    ) -> str:
        self.commits.append(message)
        self.excluded.append(list(exclude))
        return f"{len(self.commits):040x}"

    def delete_branch(self, project_path: Path, branch: str) -> None:
        if self.fail_delete is not None:
            raise GitOperationError(self.fail_delete)
        self.deleted.append(branch)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "pipeline.db",
        workdir_root=tmp_path / "work",
        step=StepSettings(
            timeout_seconds=5.0,
            max_attempts=3,
            backoff_seconds=(0.0, 0.5, 1.0),
            grace_seconds=0.5,
        ),
    )


@pytest.fixture()
def store(settings: Settings):
    task_store = TaskStateStore(settings.db_path)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture()
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture()
def workspace() -> FakeWorkspace:
    return FakeWorkspace()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path
