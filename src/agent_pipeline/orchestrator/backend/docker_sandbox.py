"""Docker-backed sandbox provider driven through the docker CLI."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from agent_pipeline.orchestrator.backend.base import SandboxCommand
from agent_pipeline.orchestrator.errors import SandboxError
from agent_pipeline.orchestrator.models import SandboxHandle, SandboxLimits
from agent_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

MANAGED_LABEL = "agent-pipeline.managed"
TASK_LABEL = "agent-pipeline.task"
CONTAINER_PREFIX = "agent-pipeline-"
CONTAINER_WORKDIR = "/workspace"

_DOCKER_CALL_TIMEOUT_SECONDS = 60.0
_STOP_GRACE_SECONDS = 5


class DockerSandboxProvider:
    """Runs each task in a long-lived, locked-down container.

    The project directory is bind-mounted at ``/workspace``; the root
    filesystem is read-only with a tmpfs ``/tmp``. Containers carry labels
    so orphans from crashed runs can be listed and removed.
    """

    def __init__(self, *, docker_bin: str = "docker") -> None:
        self._docker_bin = docker_bin

    def create(
        self,
        image: str,
        limits: SandboxLimits,
        *,
        task_id: str,
        workdir: Path | None = None,
    ) -> SandboxHandle:
        name = f"{CONTAINER_PREFIX}{task_id}"
        cmd = [
            self._docker_bin,
            "run",
            "--detach",
            "--name",
            name,
            "--label",
            f"{MANAGED_LABEL}=true",
            "--label",
            f"{TASK_LABEL}={task_id}",
            "--read-only",
            "--tmpfs",
            "/tmp:rw,exec",
            "--security-opt",
            "no-new-privileges",
            "--memory",
            limits.memory,
            "--cpus",
            f"{limits.cpus:g}",
            "--network",
            limits.network,
            "-e",
            "HOME=/tmp",
            "-w",
            CONTAINER_WORKDIR,
        ]
        if workdir is not None:
            cmd.extend(["-v", f"{workdir.resolve()}:{CONTAINER_WORKDIR}"])
        cmd.extend([image, "sleep", "infinity"])

        result = self._docker(cmd)
        if result.returncode != 0:
            raise SandboxError(
                f"Failed to create sandbox {name} from {image}: {result.stderr.strip()}",
            )
        container_id = result.stdout.strip()
        logger.info("Created sandbox %s (%s) for task %s", name, container_id[:12], task_id)
        return SandboxHandle(
            sandbox_id=container_id,
            task_id=task_id,
            created_at=utc_now(),
            name=name,
        )

    def stop(self, handle: SandboxHandle) -> None:
        result = self._docker(
            [self._docker_bin, "stop", "--time", str(_STOP_GRACE_SECONDS), handle.sandbox_id],
        )
        if result.returncode != 0 and not _is_missing(result.stderr):
            raise SandboxError(
                f"Failed to stop sandbox {handle.sandbox_id}: {result.stderr.strip()}",
            )

    def remove(self, handle: SandboxHandle) -> None:
        result = self._docker([self._docker_bin, "rm", "--force", handle.sandbox_id])
        if result.returncode != 0 and not _is_missing(result.stderr):
            raise SandboxError(
                f"Failed to remove sandbox {handle.sandbox_id}: {result.stderr.strip()}",
            )

    def execute(self, handle: SandboxHandle, argv: list[str], *, timeout: float) -> str:
        command = self.command_for(handle, argv)
        try:
            result = subprocess.run(  # noqa: S603
                command.argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise TimeoutError(
                f"Sandbox command timed out after {timeout:g}s: {argv[0] if argv else ''}",
            ) from error
        if result.returncode != 0:
            raise SandboxError(
                f"Sandbox command failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
            )
        return result.stdout

    def command_for(self, handle: SandboxHandle, argv: list[str]) -> SandboxCommand:
        return SandboxCommand(
            argv=[
                self._docker_bin,
                "exec",
                "-i",
                "-w",
                CONTAINER_WORKDIR,
                handle.sandbox_id,
                *argv,
            ],
        )

    def list_sandboxes(self) -> list[SandboxHandle]:
        result = self._docker(
            [
                self._docker_bin,
                "ps",
                "--all",
                "--no-trunc",
                "--filter",
                f"label={MANAGED_LABEL}=true",
                "--format",
                f'{{{{.ID}}}}\t{{{{.Label "{TASK_LABEL}"}}}}\t{{{{.Names}}}}',
            ],
        )
        if result.returncode != 0:
            raise SandboxError(f"Failed to list sandboxes: {result.stderr.strip()}")

        handles: list[SandboxHandle] = []
        for line in result.stdout.splitlines():
            parts = line.strip().split("\t")
            if len(parts) != 3 or not parts[0]:  # noqa: PLR2004
                continue
            container_id, task_id, name = parts
            handles.append(
                SandboxHandle(
                    sandbox_id=container_id,
                    task_id=task_id,
                    created_at=utc_now(),
                    name=name,
                ),
            )
        return handles

    def _docker(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=_DOCKER_CALL_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as error:
            raise SandboxError(f"docker executable not found: {self._docker_bin}") from error
        except subprocess.TimeoutExpired as error:
            raise SandboxError(f"docker command timed out: {' '.join(cmd[:2])}") from error


def _is_missing(stderr: str) -> bool:
    return "no such container" in stderr.lower()
