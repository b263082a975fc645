"""GitHub remote host: git push plus pull requests over the REST API."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from agent_pipeline import __version__
from agent_pipeline.orchestrator.backend.git_ops import GitOperationError, run_git
from agent_pipeline.orchestrator.errors import PublicationError
from agent_pipeline.orchestrator.models import ChangeRequestRef

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
_PUSH_TIMEOUT_SECONDS = 300.0


class GitHubHost:
    """Pushes task branches to ``origin`` and opens pull requests."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str,
        repo: str,
        base_branch: str = "main",
        api_url: str = DEFAULT_API_URL,
        remote: str = "origin",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if repo.count("/") != 1:
            raise ValueError(f"GitHub repo must look like 'owner/name', got {repo!r}")
        self.repo = repo
        self.base_branch = base_branch
        self.remote = remote
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "User-Agent": f"agent-pipeline/{__version__}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def push_branch(self, project_path: Path, branch: str) -> None:
        try:
            result = run_git(
                project_path,
                "push",
                "--set-upstream",
                self.remote,
                branch,
                timeout=_PUSH_TIMEOUT_SECONDS,
            )
        except GitOperationError as error:
            raise PublicationError(f"git push of {branch} failed: {error}") from error
        if not result.success:
            raise PublicationError(f"git push of {branch} failed: {result.stderr.strip()}")
        logger.info("Pushed %s to %s", branch, self.remote)

    def create_change_request(self, *, branch: str, title: str, body: str) -> ChangeRequestRef:
        payload = {"title": title, "head": branch, "base": self.base_branch, "body": body}
        try:
            response = self._client.post(f"/repos/{self.repo}/pulls", json=payload)
        except httpx.HTTPError as error:
            raise PublicationError(f"GitHub request failed: {error}") from error

        if response.status_code == httpx.codes.UNPROCESSABLE_ENTITY and _already_exists(response):
            existing = self._find_open_pull(branch)
            if existing is not None:
                logger.info("Pull request for %s already exists: %s", branch, existing.url)
                return existing

        if not response.is_success:
            raise PublicationError(
                f"GitHub pull request creation failed: HTTP {response.status_code} "
                f"{_error_message(response)}",
            )
        data = response.json()
        ref = ChangeRequestRef(url=str(data["html_url"]), id=str(data["number"]))
        logger.info("Opened pull request %s for %s", ref.url, branch)
        return ref

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubHost:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _find_open_pull(self, branch: str) -> ChangeRequestRef | None:
        owner = self.repo.split("/", 1)[0]
        try:
            response = self._client.get(
                f"/repos/{self.repo}/pulls",
                params={"head": f"{owner}:{branch}", "state": "open"},
            )
        except httpx.HTTPError as error:
            raise PublicationError(f"GitHub request failed: {error}") from error
        if not response.is_success:
            return None
        pulls = response.json()
        if not isinstance(pulls, list) or not pulls:
            return None
        first = pulls[0]
        return ChangeRequestRef(url=str(first["html_url"]), id=str(first["number"]))


def _already_exists(response: httpx.Response) -> bool:
    return "already exists" in response.text.lower()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text[:200]
