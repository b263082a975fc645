"""Deterministic step failure classification for invoker retry policy."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

import httpx

from agent_pipeline.orchestrator.errors import AgentRunError
from agent_pipeline.orchestrator.models import RETRYABLE_FAILURE_CLASSES, FailureClass

FAILURE_CLASSIFIER_VERSION = 2


def _status_codes(*codes: int) -> str:
    # Bare numbers only count next to an HTTP/status/error marker.
    alternatives = "|".join(str(code) for code in codes)
    return rf"\b(?:http(?:/\d(?:\.\d)?)?|status(?: code)?|error)[\s:=]+(?:{alternatives})\b"


_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    r"permission denied",
    r"\bunauthori[sz]ed\b",
    r"\bforbidden\b",
    r"invalid api key",
    r"authentication failed",
    r"access denied",
    _status_codes(401, 403),
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"too many requests",
    r"rate limit",
    r"try again later",
    _status_codes(429),
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    r"connection refused",
    r"connection reset",
    r"\beconnrefused\b",
    r"\beconnreset\b",
    r"socket hang up",
    r"temporarily unavailable",
    r"temporary failure",
    r"service unavailable",
    r"\bbusy\b",
    r"network error",
    r"could not resolve host",
    _status_codes(502, 503, 504),
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    r"timed out",
    r"\btimeout\b",
    r"\betimedout\b",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    r"not found",
    r"no such file",
    r"\benoent\b",
    _status_codes(404),
)
_MALFORMED_INPUT_PATTERNS: tuple[str, ...] = (
    r"syntax ?error",
    r"parse error",
    r"invalid json",
    r"\bmalformed\b",
    r"unexpected token",
)

_REMEDIATIONS: dict[FailureClass, str] = {
    FailureClass.TIMEOUT: "increase the step timeout or simplify the task",
    FailureClass.NETWORK_TRANSIENT: "check network connectivity and retry",
    FailureClass.RATE_LIMITED: "wait for the rate limit window to reset and retry",
    FailureClass.ACCESS_OR_AUTH: "check credentials and permissions",
    FailureClass.NOT_FOUND: "check that the referenced file, command or resource exists",
    FailureClass.MALFORMED_INPUT: "fix the malformed input or agent output",
    FailureClass.NON_RETRYABLE: "inspect the step logs and fix the underlying error",
    FailureClass.UNKNOWN: "inspect the step logs if the failure persists after retries",
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    @property
    def remediation(self) -> str:
        return remediation_for(self.failure_class)

    def to_event_details(self, *, role: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "role": role,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def remediation_for(failure_class: FailureClass) -> str:
    return _REMEDIATIONS[failure_class]


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a step failure into a retryable or fatal class.

    Exception types are checked first, then message patterns over the
    exception text and, for ``AgentRunError``, the captured stderr. Agent
    stdout is free text and never classified. Only the explicit fatal
    classes stop retries; anything unrecognised is retried.
    """

    by_type = _classify_by_type(error)
    if by_type is not None:
        return by_type

    haystack = _normalize_text(error)
    for failure_class, rule, patterns in _COMPILED_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{rule}_pattern",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        reason_code="unrecognised_failure",
        matched_rule="fallback_retryable",
        matched_pattern=None,
    )


_PATTERN_RULES: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
    (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.RATE_LIMITED, "rate_limited", _RATE_LIMIT_PATTERNS),
    (FailureClass.NETWORK_TRANSIENT, "network_transient", _NETWORK_TRANSIENT_PATTERNS),
    (FailureClass.TIMEOUT, "timeout", _TIMEOUT_PATTERNS),
    (FailureClass.NOT_FOUND, "not_found", _NOT_FOUND_PATTERNS),
    (FailureClass.MALFORMED_INPUT, "malformed_input", _MALFORMED_INPUT_PATTERNS),
)
_COMPILED_RULES: tuple[tuple[FailureClass, str, tuple[re.Pattern[str], ...]], ...] = tuple(
    (failure_class, rule, tuple(re.compile(pattern) for pattern in patterns))
    for failure_class, rule, patterns in _PATTERN_RULES
)


def _classify_by_type(error: BaseException) -> FailureClassification | None:  # noqa: PLR0911
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_http_status(error.response.status_code)
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return _type_match(FailureClass.TIMEOUT, error)
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return _type_match(FailureClass.NETWORK_TRANSIENT, error)
    if isinstance(error, PermissionError):
        return _type_match(FailureClass.ACCESS_OR_AUTH, error)
    if isinstance(error, FileNotFoundError):
        return _type_match(FailureClass.NOT_FOUND, error)
    if isinstance(error, (SyntaxError, json.JSONDecodeError)):
        return _type_match(FailureClass.MALFORMED_INPUT, error)
    if isinstance(error, ValueError):
        return _type_match(FailureClass.MALFORMED_INPUT, error)
    return None


def _classify_http_status(status_code: int) -> FailureClassification:
    if status_code == 429:  # noqa: PLR2004
        failure_class = FailureClass.RATE_LIMITED
    elif status_code >= 500:  # noqa: PLR2004
        failure_class = FailureClass.NETWORK_TRANSIENT
    elif status_code in {401, 403}:
        failure_class = FailureClass.ACCESS_OR_AUTH
    elif status_code == 404:  # noqa: PLR2004
        failure_class = FailureClass.NOT_FOUND
    else:
        failure_class = FailureClass.NON_RETRYABLE
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"http_{status_code}",
        matched_rule="http_status",
        matched_pattern=str(status_code),
    )


def _type_match(failure_class: FailureClass, error: BaseException) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{failure_class.value}_exception",
        matched_rule="exception_type",
        matched_pattern=type(error).__name__,
    )


def _normalize_text(error: BaseException) -> str:
    parts = [str(error)]
    if isinstance(error, AgentRunError):
        parts.append(error.stderr)
    return "\n".join(parts).lower()


def _first_match(haystack: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        match = pattern.search(haystack)
        if match is not None:
            return match.group(0)
    return None
