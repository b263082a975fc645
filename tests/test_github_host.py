from __future__ import annotations

import json

import allure
import httpx
import pytest

from agent_pipeline.orchestrator.backend import GitHubHost
from agent_pipeline.orchestrator.errors import PublicationError

pytestmark = [
    allure.epic("Publication"),
    allure.feature("GitHub Host"),
]


def _host(handler) -> GitHubHost:
    return GitHubHost(
        token="test-token",
        repo="acme/widgets",
        base_branch="develop",
        api_url="https://github.example.test/api/v3/",
        transport=httpx.MockTransport(handler),
    )


def test_create_change_request_posts_pull(tmp_path) -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"number": 42, "html_url": "https://github.example.test/acme/widgets/pull/42"},
        )

    with _host(_handler) as host:
        ref = host.create_change_request(branch="agent/abc", title="Add cache", body="body")

    assert ref.id == "42"
    assert ref.url.endswith("/pull/42")
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v3/repos/acme/widgets/pulls"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert json.loads(request.content) == {
        "title": "Add cache",
        "head": "agent/abc",
        "base": "develop",
        "body": "body",
    }


def test_existing_pull_is_reused() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(
                422,
                json={
                    "message": "Validation Failed",
                    "errors": [{"message": "A pull request already exists for acme:agent/abc."}],
                },
            )
        assert request.url.params["head"] == "acme:agent/abc"
        return httpx.Response(
            200,
            json=[{"number": 7, "html_url": "https://github.example.test/acme/widgets/pull/7"}],
        )

    with _host(_handler) as host:
        ref = host.create_change_request(branch="agent/abc", title="t", body="b")

    assert ref.id == "7"


def test_api_error_raises_publication_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Bad credentials"})

    with _host(_handler) as host, pytest.raises(PublicationError, match="Bad credentials"):
        host.create_change_request(branch="agent/abc", title="t", body="b")


def test_transport_error_raises_publication_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _host(_handler) as host, pytest.raises(PublicationError, match="request failed"):
        host.create_change_request(branch="agent/abc", title="t", body="b")


def test_repo_must_be_owner_slash_name() -> None:
    with pytest.raises(ValueError, match="owner/name"):
        GitHubHost(token="t", repo="widgets")
