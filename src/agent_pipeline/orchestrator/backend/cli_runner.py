"""Subprocess-based agent runner for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING

from agent_pipeline.orchestrator.backend.base import (
    AgentRunRequest,
    AgentRunResult,
    SandboxProvider,
)
from agent_pipeline.orchestrator.errors import AgentRunError
from agent_pipeline.orchestrator.pricing import PricingTable, estimate_cost_usd
from agent_pipeline.orchestrator.usage import extract_usage

if TYPE_CHECKING:
    from agent_pipeline.orchestrator.invoker import CancelToken

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1
_TERMINATE_WAIT_SECONDS = 2.0


class CliAgentRunner:
    """Execute a role through a CLI command template inside a sandbox.

    Supported placeholders: ``{role}``, ``{prompt}``, ``{prompt_file}`` and
    ``{model}``. ``{prompt_file}`` is a host path, so sandboxes that do not
    share the host filesystem should use ``{prompt}``.
    """

    def __init__(
        self,
        *,
        provider: SandboxProvider,
        command_template: str,
        pricing: PricingTable | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self.command_template = command_template
        self.pricing = pricing or {}
        self.extra_env = extra_env or {}

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        log_dir = request.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{request.role}-attempt{request.attempt}"
        prompt_file = log_dir / f"{stem}.prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        stdout_path = log_dir / f"{stem}.stdout.log"
        stderr_path = log_dir / f"{stem}.stderr.log"

        argv = build_run_args(
            command_template=self.command_template,
            role=request.role,
            model=request.model,
            prompt=request.prompt,
            prompt_file=prompt_file,
        )
        command = self.provider.command_for(request.sandbox, argv)

        env = os.environ.copy()
        env.update(self.extra_env)
        env.update(command.env)
        env["AGENT_PIPELINE_TASK_ID"] = request.task_id
        env["AGENT_PIPELINE_ROLE"] = request.role
        env["AGENT_PIPELINE_MODEL"] = request.model

        logger.info(
            "Running %s for task %s (attempt %d)",
            request.role,
            request.task_id,
            request.attempt,
        )
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, cancelled = _run_subprocess_with_cancel(
                    run_args=command.argv,
                    cwd=command.cwd,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    token=request.token,
                )
        except FileNotFoundError as error:
            raise AgentRunError(f"Agent command not found: {command.argv[0]}") from error
        except OSError as error:
            raise AgentRunError(f"Agent command failed to start: {error}") from error

        stdout = _read_text(stdout_path)
        stderr = _read_text(stderr_path)
        if cancelled:
            raise AgentRunError(
                f"{request.role} agent was stopped before completion",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        if exit_code != 0:
            raise AgentRunError(
                f"{request.role} agent exited with code {exit_code}: {_tail(stderr or stdout)}",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )

        usage = extract_usage(stdout=stdout, stderr=stderr)
        cost = estimate_cost_usd(
            role=request.role,
            model=request.model,
            usage=usage,
            pricing=self.pricing,
        )
        return AgentRunResult(
            output=_extract_output_text(stdout),
            exit_code=exit_code,
            stderr=stderr,
            cost_usd=cost,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def build_run_args(
    *,
    command_template: str,
    role: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ValueError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ValueError("Agent command template must include {prompt} or {prompt_file}.")

    try:
        rendered = stripped.format(
            role=shlex.quote(role),
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValueError("Agent command template rendered empty command.")
    return argv


def _run_subprocess_with_cancel(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path | None,
    env: dict[str, str],
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    token: CancelToken | None,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    terminated = False

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, terminated

        if token is not None and token.kill_requested:
            _kill_process(process)
            return process.returncode if process.returncode is not None else -9, True

        if token is not None and token.stop_requested and not terminated:
            terminated = True
            try:
                process.terminate()
            except OSError:
                pass

        time.sleep(_POLL_INTERVAL_SECONDS)


def _kill_process(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Agent process %s did not exit after kill", process.pid)


def _extract_output_text(stdout: str) -> str:
    """Return the agent's final text; unwraps JSON envelopes with a ``result`` field."""

    stripped = stdout.strip()
    if not stripped.startswith("{"):
        return stdout
    try:
        payload = json.loads(stripped)
    except ValueError:
        return stdout
    if isinstance(payload, dict) and isinstance(payload.get("result"), str):
        return payload["result"]
    return stdout


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""


def _tail(text: str, *, limit: int = 400) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return "..." + stripped[-limit:]
