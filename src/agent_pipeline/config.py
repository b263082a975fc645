"""Runtime configuration for the agent pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from agent_pipeline.orchestrator.pricing import PricingTable, parse_pricing_mapping

_SANDBOX_PROVIDERS = frozenset({"docker", "local"})
DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p {prompt} --model {model} --output-format json"


def default_state_dir() -> Path:
    """Per-user state directory, kept outside any project checkout."""

    base = os.getenv("XDG_STATE_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".local" / "state"
    return root / "agent_pipeline"


@dataclass(slots=True)
class SandboxSettings:
    """Sandbox provider settings."""

    provider: str = "docker"
    image: str = "python:3.12-slim"
    memory: str = "4g"
    cpus: float = 2.0
    network: str = "none"


@dataclass(slots=True)
class AgentSettings:
    """CLI agent invocation settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = "sonnet"
    pricing: PricingTable = field(default_factory=dict)


@dataclass(slots=True)
class StepSettings:
    """Per-step timeout and retry settings."""

    timeout_seconds: float = 300.0
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (0.0, 2.0, 4.0)
    grace_seconds: float = 5.0
    max_steps: int | None = None
    max_cost_usd: float | None = None


@dataclass(slots=True)
class GitHubSettings:
    """Remote host settings for change request publication."""

    token: str = ""
    repo: str = ""
    api_url: str = "https://api.github.com"
    base_branch: str = "main"

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.repo)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = field(default_factory=lambda: default_state_dir() / "pipeline.db")
    workdir_root: Path = field(default_factory=lambda: default_state_dir() / "work")
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    step: StepSettings = field(default_factory=StepSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        state_dir = default_state_dir()
        return cls(
            db_path=db_path or _env_path("AGENT_PIPELINE_DB_PATH", state_dir / "pipeline.db"),
            workdir_root=_env_path("AGENT_PIPELINE_WORKDIR_ROOT", state_dir / "work"),
            sandbox=SandboxSettings(
                provider=os.getenv("AGENT_PIPELINE_SANDBOX_PROVIDER", "docker").strip().lower(),
                image=os.getenv("AGENT_PIPELINE_SANDBOX_IMAGE", "python:3.12-slim"),
                memory=os.getenv("AGENT_PIPELINE_SANDBOX_MEMORY", "4g"),
                cpus=_env_float("AGENT_PIPELINE_SANDBOX_CPUS", 2.0),
                network=os.getenv("AGENT_PIPELINE_SANDBOX_NETWORK", "none"),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "AGENT_PIPELINE_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("AGENT_PIPELINE_AGENT_MODEL", "sonnet"),
                pricing=parse_pricing_mapping(os.getenv("AGENT_PIPELINE_LLM_PRICING", "")),
            ),
            step=StepSettings(
                timeout_seconds=_env_float("AGENT_PIPELINE_STEP_TIMEOUT_SECONDS", 300.0),
                max_attempts=_env_int("AGENT_PIPELINE_STEP_MAX_ATTEMPTS", 3),
                backoff_seconds=_env_float_csv(
                    "AGENT_PIPELINE_STEP_BACKOFF_SECONDS",
                    (0.0, 2.0, 4.0),
                ),
                grace_seconds=_env_float("AGENT_PIPELINE_STEP_GRACE_SECONDS", 5.0),
                max_steps=_env_optional_int("AGENT_PIPELINE_MAX_STEPS"),
                max_cost_usd=_env_optional_float("AGENT_PIPELINE_MAX_COST_USD"),
            ),
            github=GitHubSettings(
                token=os.getenv("AGENT_PIPELINE_GITHUB_TOKEN", "").strip(),
                repo=os.getenv("AGENT_PIPELINE_GITHUB_REPO", "").strip(),
                api_url=os.getenv(
                    "AGENT_PIPELINE_GITHUB_API_URL",
                    "https://api.github.com",
                ).rstrip("/"),
                base_branch=os.getenv("AGENT_PIPELINE_BASE_BRANCH", "main"),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the offending variable."""

        if self.sandbox.provider not in _SANDBOX_PROVIDERS:
            raise ValueError(
                "AGENT_PIPELINE_SANDBOX_PROVIDER must be one of "
                f"{sorted(_SANDBOX_PROVIDERS)}, got {self.sandbox.provider!r}.",
            )
        if self.sandbox.cpus <= 0:
            raise ValueError("AGENT_PIPELINE_SANDBOX_CPUS must be > 0.")
        if "{prompt" not in self.agent.command_template:
            raise ValueError(
                "AGENT_PIPELINE_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.step.timeout_seconds <= 0:
            raise ValueError("AGENT_PIPELINE_STEP_TIMEOUT_SECONDS must be > 0.")
        if self.step.max_attempts < 1:
            raise ValueError("AGENT_PIPELINE_STEP_MAX_ATTEMPTS must be >= 1.")
        if not self.step.backoff_seconds or any(value < 0 for value in self.step.backoff_seconds):
            raise ValueError(
                "AGENT_PIPELINE_STEP_BACKOFF_SECONDS must be a non-empty list of values >= 0.",
            )
        if self.step.grace_seconds < 0:
            raise ValueError("AGENT_PIPELINE_STEP_GRACE_SECONDS must be >= 0.")
        if self.step.max_steps is not None and self.step.max_steps < 1:
            raise ValueError("AGENT_PIPELINE_MAX_STEPS must be >= 1.")
        if self.step.max_cost_usd is not None and self.step.max_cost_usd <= 0:
            raise ValueError("AGENT_PIPELINE_MAX_COST_USD must be > 0.")
        if self.github.repo and self.github.repo.count("/") != 1:
            raise ValueError(
                "AGENT_PIPELINE_GITHUB_REPO must look like 'owner/name', "
                f"got {self.github.repo!r}.",
            )
        parsed = urlparse(self.github.api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"AGENT_PIPELINE_GITHUB_API_URL must be an absolute http(s) URL, "
                f"got {self.github.api_url!r}.",
            )


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name, "").strip()
    return Path(value).expanduser() if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return _env_int(name, 0)


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return _env_float(name, 0.0)


def _env_float_csv(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[float] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(float(token))
        except ValueError as error:
            raise ValueError(f"Invalid number in {name}: {token!r}") from error
    return tuple(values)
