from __future__ import annotations

import allure
import httpx
import pytest

from agent_pipeline.orchestrator.errors import AgentRunError
from agent_pipeline.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
)
from agent_pipeline.orchestrator.invoker import StepTimeoutError
from agent_pipeline.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Agent Steps"),
    allure.feature("Failure Classification"),
]


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/run")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("upstream error", request=request, response=response)


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 2


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (StepTimeoutError("coder step timed out after 5s"), FailureClass.TIMEOUT),
        (ConnectionResetError("peer reset"), FailureClass.NETWORK_TRANSIENT),
        (PermissionError("permission denied: /repo"), FailureClass.ACCESS_OR_AUTH),
        (FileNotFoundError("missing.py"), FailureClass.NOT_FOUND),
        (ValueError("bad directive"), FailureClass.MALFORMED_INPUT),
    ],
)
def test_exception_types_map_to_classes(error: BaseException, expected: FailureClass) -> None:
    classified = classify_failure(error)

    assert classified.failure_class == expected
    assert classified.matched_rule == "exception_type"
    assert classified.matched_pattern == type(error).__name__


@pytest.mark.parametrize(
    ("status_code", "expected", "retryable"),
    [
        (429, FailureClass.RATE_LIMITED, True),
        (503, FailureClass.NETWORK_TRANSIENT, True),
        (401, FailureClass.ACCESS_OR_AUTH, False),
        (404, FailureClass.NOT_FOUND, False),
        (400, FailureClass.NON_RETRYABLE, False),
    ],
)
def test_http_status_errors_use_status_code(
    status_code: int,
    expected: FailureClass,
    retryable: bool,
) -> None:
    classified = classify_failure(_status_error(status_code))

    assert classified.failure_class == expected
    assert classified.retryable is retryable
    assert classified.reason_code == f"http_{status_code}"


def test_agent_stderr_is_searched_for_patterns() -> None:
    error = AgentRunError(
        "reviewer agent exited with code 1",
        exit_code=1,
        stderr="Error: 429 Too Many Requests",
    )

    classified = classify_failure(error)

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_rule == "rate_limited"
    assert classified.retryable is True


def test_auth_patterns_win_over_transient_ones() -> None:
    error = AgentRunError(
        "agent failed",
        stderr="service unavailable: permission denied for token",
    )

    classified = classify_failure(error)

    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.retryable is False


def test_busy_sandbox_is_transient() -> None:
    classified = classify_failure(RuntimeError("sandbox busy, try again"))

    assert classified.failure_class == FailureClass.NETWORK_TRANSIENT
    assert classified.matched_pattern == "busy"


def test_unrecognised_agent_crash_is_retried() -> None:
    classified = classify_failure(
        AgentRunError("reviewer agent exited with code 1: Segmentation fault", exit_code=1),
    )

    assert classified.failure_class == FailureClass.UNKNOWN
    assert classified.reason_code == "unrecognised_failure"
    assert classified.matched_rule == "fallback_retryable"
    assert classified.retryable is True


def test_numbers_in_agent_stdout_do_not_look_like_status_codes() -> None:
    error = AgentRunError(
        "coder agent exited with code 1: connection reset by peer",
        exit_code=1,
        stdout="Scanned 1403 files in 401ms, 404 warnings",
        stderr="connection reset by peer",
    )

    classified = classify_failure(error)

    assert classified.failure_class == FailureClass.NETWORK_TRANSIENT
    assert classified.matched_pattern == "connection reset"
    assert classified.retryable is True


def test_agent_stdout_is_not_classified() -> None:
    error = AgentRunError("tester agent exited with code 2", stdout="permission denied")

    assert classify_failure(error).failure_class == FailureClass.UNKNOWN


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("HTTP/1.1 403 Forbidden", FailureClass.ACCESS_OR_AUTH),
        ("upstream status: 401", FailureClass.ACCESS_OR_AUTH),
        ("error 404 while fetching model", FailureClass.NOT_FOUND),
        ("HTTP 503 from gateway", FailureClass.NETWORK_TRANSIENT),
        ("processed 4030 rows, 5031 skipped", FailureClass.UNKNOWN),
    ],
)
def test_status_codes_need_http_context(stderr: str, expected: FailureClass) -> None:
    error = AgentRunError("agent exited with code 1", exit_code=1, stderr=stderr)

    assert classify_failure(error).failure_class == expected


def test_event_details_carry_remediation_context() -> None:
    classified = classify_failure(PermissionError("denied"))

    details = classified.to_event_details(role="security")

    assert details["role"] == "security"
    assert details["failure_class"] == "access_or_auth"
    assert details["retryable"] is False
    assert classified.remediation == "check credentials and permissions"
