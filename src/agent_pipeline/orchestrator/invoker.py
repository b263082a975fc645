"""Single agent step execution under timeout and bounded retry."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from agent_pipeline.orchestrator.failure_classifier import (
    FailureClassification,
    classify_failure,
)
from agent_pipeline.orchestrator.models import FailureClass, StepOutcome, StepRecord
from agent_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Timeout and retry budget for one agent step."""

    timeout_seconds: float = 300.0
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = (0.0, 2.0, 4.0)
    grace_seconds: float = 5.0

    def delay_before(self, attempt: int) -> float:
        """Delay before the 1-based attempt; the last configured value repeats."""

        if not self.backoff_seconds:
            return 0.0
        index = min(max(attempt - 1, 0), len(self.backoff_seconds) - 1)
        return max(0.0, self.backoff_seconds[index])


class CancelToken:
    """Cooperative stop/kill signal shared between invoker and unit of work."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._kill = threading.Event()

    def request_stop(self) -> None:
        self._stop.set()

    def request_kill(self) -> None:
        self._stop.set()
        self._kill.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def kill_requested(self) -> bool:
        return self._kill.is_set()

    def wait_stop(self, timeout: float | None = None) -> bool:
        return self._stop.wait(timeout)


@dataclass(slots=True)
class StepOutput:
    """Successful unit of work result."""

    output: str
    cost_usd: float = 0.0


class UnitOfWork(Protocol):
    """Callable executed once per attempt; raises on failure."""

    def __call__(self, token: CancelToken) -> StepOutput:
        """Run one attempt, honoring stop/kill requests on the token."""


@dataclass(slots=True)
class StepFailure:
    """Terminal failure of one step after classification and retries."""

    role: str
    error: str
    attempts: int
    failure_class: FailureClass
    remediation: str
    diagnostics: dict[str, object] = field(default_factory=dict)

    def describe(self) -> str:
        return (
            f"{self.role} step failed after {self.attempts} attempt(s) "
            f"[{self.failure_class.value}]: {self.error}. "
            f"Next action: {self.remediation}."
        )


@dataclass(slots=True)
class InvocationResult:
    """Outcome of one step across all of its attempts."""

    ok: bool
    output: str
    attempts: int
    failure: StepFailure | None = None
    cost_usd: float = 0.0
    records: list[StepRecord] = field(default_factory=list)


@dataclass(slots=True)
class _AttemptBox:
    result: StepOutput | None = None
    error: BaseException | None = None


class StepTimeoutError(TimeoutError):
    """Attempt exceeded its timeout and was stopped."""


class RetryableInvoker:
    """Runs a unit of work with timeout, classification and backoff."""

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def invoke(
        self,
        unit: UnitOfWork,
        policy: RetryPolicy,
        *,
        role: str,
        on_attempt: Callable[[StepRecord], None] | None = None,
    ) -> InvocationResult:
        records: list[StepRecord] = []
        total_cost = 0.0
        max_attempts = max(1, policy.max_attempts)

        for attempt in range(1, max_attempts + 1):
            delay = policy.delay_before(attempt)
            if delay > 0:
                logger.info("Waiting %.1fs before %s attempt %d", delay, role, attempt)
                self._sleep(delay)

            started_at = utc_now()
            box = self._run_attempt(unit, policy=policy, role=role, attempt=attempt)
            ended_at = utc_now()

            if box.error is None and box.result is not None:
                total_cost += box.result.cost_usd
                record = StepRecord(
                    role=role,
                    started_at=started_at,
                    ended_at=ended_at,
                    outcome=StepOutcome.SUCCESS,
                    attempt=attempt,
                    output=box.result.output,
                    cost_usd=box.result.cost_usd,
                )
                records.append(record)
                if on_attempt is not None:
                    on_attempt(record)
                return InvocationResult(
                    ok=True,
                    output=box.result.output,
                    attempts=attempt,
                    cost_usd=total_cost,
                    records=records,
                )

            error = box.error or RuntimeError(f"{role} step returned no result")
            classification = classify_failure(error)
            final = not classification.retryable or attempt >= max_attempts
            record = StepRecord(
                role=role,
                started_at=started_at,
                ended_at=ended_at,
                outcome=StepOutcome.FAILURE if final else StepOutcome.RETRIED,
                attempt=attempt,
                output=getattr(error, "stdout", "") or "",
                failure_class=classification.failure_class,
                error=str(error),
            )
            records.append(record)
            if on_attempt is not None:
                on_attempt(record)

            if final:
                _log_final_failure(role=role, attempt=attempt, classification=classification)
                return InvocationResult(
                    ok=False,
                    output="",
                    attempts=attempt,
                    failure=StepFailure(
                        role=role,
                        error=str(error),
                        attempts=attempt,
                        failure_class=classification.failure_class,
                        remediation=classification.remediation,
                        diagnostics=classification.to_event_details(role=role),
                    ),
                    cost_usd=total_cost,
                    records=records,
                )
            logger.warning(
                "%s attempt %d/%d failed (%s, rule=%s): %s; retrying",
                role,
                attempt,
                max_attempts,
                classification.failure_class.value,
                classification.matched_rule,
                error,
            )

        raise AssertionError("unreachable: attempt loop always returns")  # pragma: no cover

    def _run_attempt(
        self,
        unit: UnitOfWork,
        *,
        policy: RetryPolicy,
        role: str,
        attempt: int,
    ) -> _AttemptBox:
        box = _AttemptBox()
        token = CancelToken()

        def _target() -> None:
            try:
                box.result = unit(token)
            except Exception as error:  # noqa: BLE001
                box.error = error

        worker = threading.Thread(
            target=_target,
            daemon=True,
            name=f"step-{role}-{attempt}",
        )
        worker.start()
        worker.join(timeout=policy.timeout_seconds)
        if not worker.is_alive():
            return box

        logger.warning(
            "%s attempt %d exceeded %.1fs; requesting graceful stop",
            role,
            attempt,
            policy.timeout_seconds,
        )
        token.request_stop()
        worker.join(timeout=policy.grace_seconds)
        if worker.is_alive():
            logger.warning("%s attempt %d ignored stop; forcing kill", role, attempt)
            token.request_kill()
            worker.join(timeout=policy.grace_seconds)
            if worker.is_alive():
                logger.error("%s attempt %d still running after kill; abandoning", role, attempt)

        return _AttemptBox(
            error=StepTimeoutError(
                f"{role} step timed out after {policy.timeout_seconds:g}s",
            ),
        )


def _log_final_failure(
    *,
    role: str,
    attempt: int,
    classification: FailureClassification,
) -> None:
    logger.error(
        "%s step failed after %d attempt(s) (%s, reason=%s): %s",
        role,
        attempt,
        classification.failure_class.value,
        classification.reason_code,
        classification.remediation,
    )
