"""Directory-based sandbox provider for development and tests."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path

from agent_pipeline.orchestrator.backend.base import SandboxCommand
from agent_pipeline.orchestrator.errors import SandboxError
from agent_pipeline.orchestrator.models import SandboxHandle, SandboxLimits
from agent_pipeline.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

_MARKER_FILE = "sandbox.json"


class LocalSandboxProvider:
    """Runs commands directly on the host in a per-task scratch directory.

    Provides no isolation; limits are recorded but not enforced.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def create(
        self,
        image: str,
        limits: SandboxLimits,
        *,
        task_id: str,
        workdir: Path | None = None,
    ) -> SandboxHandle:
        sandbox_dir = self._sandbox_dir(task_id)
        try:
            sandbox_dir.mkdir(parents=True, exist_ok=False)
        except FileExistsError as error:
            raise SandboxError(
                f"Sandbox already exists for task {task_id}: {sandbox_dir}",
            ) from error
        except OSError as error:
            raise SandboxError(
                f"Failed to create sandbox directory {sandbox_dir}: {error}",
            ) from error

        created_at = utc_now()
        marker = {
            "task_id": task_id,
            "image": image,
            "memory": limits.memory,
            "cpus": limits.cpus,
            "network": limits.network,
            "workdir": str(workdir.resolve()) if workdir is not None else str(sandbox_dir),
            "created_at": created_at.isoformat(),
        }
        (sandbox_dir / _MARKER_FILE).write_text(json.dumps(marker, indent=2), "utf-8")
        logger.info("Created local sandbox %s for task %s", sandbox_dir, task_id)
        return SandboxHandle(
            sandbox_id=_sandbox_id(task_id),
            task_id=task_id,
            created_at=created_at,
            name=sandbox_dir.name,
        )

    def stop(self, handle: SandboxHandle) -> None:
        logger.debug("Local sandbox %s has no processes to stop", handle.sandbox_id)

    def remove(self, handle: SandboxHandle) -> None:
        sandbox_dir = self._sandbox_dir(handle.task_id)
        if not sandbox_dir.exists():
            return
        try:
            shutil.rmtree(sandbox_dir)
        except OSError as error:
            raise SandboxError(
                f"Failed to remove sandbox directory {sandbox_dir}: {error}",
            ) from error

    def execute(self, handle: SandboxHandle, argv: list[str], *, timeout: float) -> str:
        command = self.command_for(handle, argv)
        try:
            result = subprocess.run(  # noqa: S603
                command.argv,
                cwd=command.cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise TimeoutError(f"Sandbox command timed out after {timeout:g}s") from error
        if result.returncode != 0:
            raise SandboxError(
                f"Sandbox command failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
            )
        return result.stdout

    def command_for(self, handle: SandboxHandle, argv: list[str]) -> SandboxCommand:
        sandbox_dir = self._sandbox_dir(handle.task_id)
        return SandboxCommand(
            argv=list(argv),
            cwd=self._workdir(handle.task_id),
            env={"AGENT_PIPELINE_SANDBOX_DIR": str(sandbox_dir)},
        )

    def list_sandboxes(self) -> list[SandboxHandle]:
        if not self.root.exists():
            return []
        handles: list[SandboxHandle] = []
        for marker_path in sorted(self.root.glob(f"*/{_MARKER_FILE}")):
            marker = _read_marker(marker_path)
            if marker is None:
                continue
            task_id = str(marker["task_id"])
            handles.append(
                SandboxHandle(
                    sandbox_id=_sandbox_id(task_id),
                    task_id=task_id,
                    created_at=from_iso(str(marker["created_at"])),
                    name=marker_path.parent.name,
                ),
            )
        return handles

    def _sandbox_dir(self, task_id: str) -> Path:
        return self.root / f"sandbox-{task_id}"

    def _workdir(self, task_id: str) -> Path:
        sandbox_dir = self._sandbox_dir(task_id)
        marker = _read_marker(sandbox_dir / _MARKER_FILE)
        if marker is None:
            raise SandboxError(f"Sandbox not found for task {task_id}")
        return Path(str(marker["workdir"]))


def _sandbox_id(task_id: str) -> str:
    return f"local-{task_id}"


def _read_marker(path: Path) -> dict[str, object] | None:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError) as error:
        logger.debug("Skipping unreadable sandbox marker %s: %s", path, error)
        return None
    if not isinstance(payload, dict) or "task_id" not in payload or "created_at" not in payload:
        return None
    return payload
