"""Sandbox, agent runner and remote host adapters."""

from agent_pipeline.orchestrator.backend.base import (
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
    BranchWorkspace,
    RemoteHost,
    SandboxCommand,
    SandboxProvider,
)
from agent_pipeline.orchestrator.backend.cli_runner import CliAgentRunner
from agent_pipeline.orchestrator.backend.docker_sandbox import DockerSandboxProvider
from agent_pipeline.orchestrator.backend.git_ops import GitOperationError, GitWorkspace
from agent_pipeline.orchestrator.backend.github_host import GitHubHost
from agent_pipeline.orchestrator.backend.local_sandbox import LocalSandboxProvider

__all__ = [
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "BranchWorkspace",
    "CliAgentRunner",
    "DockerSandboxProvider",
    "GitHubHost",
    "GitOperationError",
    "GitWorkspace",
    "LocalSandboxProvider",
    "RemoteHost",
    "SandboxCommand",
    "SandboxProvider",
]
