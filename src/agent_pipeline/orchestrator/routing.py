"""Next-role resolution for the agent pipeline."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from agent_pipeline.orchestrator.models import RoutingDirective, StepOutcome, StepRecord

logger = logging.getLogger(__name__)

DEFAULT_ROLE_ORDER: tuple[str, ...] = (
    "architect",
    "coder",
    "reviewer",
    "security",
    "documenter",
    "tester",
    "performance",
)
EXTRA_STEPS_BEYOND_ROLES = 5

APPROVE_TOKENS = frozenset({"complete", "done", "approved"})
REJECT_TOKENS = frozenset({"reject", "rejected"})

_NEXT_LINE = re.compile(
    r"^\s*[*_`>#-]*\s*NEXT\s*[*_`]*\s*:\s*(.*?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_REASON_LINE = re.compile(
    r"^\s*[*_`>#-]*\s*REASON\s*[*_`]*\s*:\s*(.*?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_VALUE_STRIP = " \t*_`'\".,;!"
_REASON_STRIP = " \t*_`"

NOT_CONVERGED_REASON = "pipeline did not converge"


class DecisionKind(str, Enum):
    """What the pipeline does after a successful step."""

    RUN = "run"
    COMPLETE = "complete"
    REJECT = "reject"
    NOT_CONVERGED = "not_converged"


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """Router verdict for the next iteration."""

    kind: DecisionKind
    role: str | None = None
    reason: str = ""
    directive: RoutingDirective | None = None
    anomaly: str | None = None


@dataclass(frozen=True, slots=True)
class _DirectiveScan:
    directive: RoutingDirective | None
    anomaly: str | None


def parse_routing_directive(output: str, known_roles: Iterable[str]) -> RoutingDirective | None:
    """Parse the last NEXT/REASON block from free-text agent output.

    Returns None when there is no block, the block is malformed, or it
    names a role outside ``known_roles``.
    """

    scan = _scan_directive(output, known_roles)
    if scan.anomaly is not None:
        logger.warning("Ignoring routing directive: %s", scan.anomaly)
    return scan.directive


def _scan_directive(output: str, known_roles: Iterable[str]) -> _DirectiveScan:
    matches = list(_NEXT_LINE.finditer(output or ""))
    if not matches:
        return _DirectiveScan(directive=None, anomaly=None)

    last = matches[-1]
    raw_value = last.group(1)
    value = raw_value.strip(_VALUE_STRIP).lower()
    reason = _reason_after(output, last.end())

    if not value:
        return _DirectiveScan(directive=None, anomaly="empty NEXT directive")
    if " " in value or "|" in value:
        return _DirectiveScan(
            directive=None,
            anomaly=f"malformed NEXT directive: {raw_value!r}",
        )
    if value in APPROVE_TOKENS:
        return _DirectiveScan(
            directive=RoutingDirective(next_role=None, reason=reason, approved=True),
            anomaly=None,
        )
    if value in REJECT_TOKENS:
        return _DirectiveScan(
            directive=RoutingDirective(next_role=None, reason=reason, rejected=True),
            anomaly=None,
        )

    roles = {role.lower() for role in known_roles}
    if value not in roles:
        return _DirectiveScan(directive=None, anomaly=f"unknown role in NEXT directive: {value!r}")
    return _DirectiveScan(directive=RoutingDirective(next_role=value, reason=reason), anomaly=None)


def _reason_after(output: str, position: int) -> str:
    following = _REASON_LINE.search(output, position)
    if following is not None:
        return following.group(1).strip(_REASON_STRIP)
    preceding = list(_REASON_LINE.finditer(output, 0, position))
    if preceding:
        return preceding[-1].group(1).strip(_REASON_STRIP)
    return ""


class PipelineRouter:
    """Decides the next role from the default order or an embedded directive."""

    def __init__(
        self,
        roles: Sequence[str] = DEFAULT_ROLE_ORDER,
        *,
        max_steps: int | None = None,
    ) -> None:
        if not roles:
            raise ValueError("Pipeline requires at least one role.")
        self.roles = tuple(role.lower() for role in roles)
        self.max_steps = (
            max_steps if max_steps is not None else len(self.roles) + EXTRA_STEPS_BEYOND_ROLES
        )

    def first(self) -> str:
        return self.roles[0]

    def decide(self, steps: Sequence[StepRecord], output: str) -> RoutingDecision:
        """Route after a successful step whose output is ``output``."""

        scan = _scan_directive(output, self.roles)
        if scan.anomaly is not None:
            logger.warning("Routing anomaly: %s; falling back to default order", scan.anomaly)

        directive = scan.directive
        if directive is not None and directive.approved:
            return RoutingDecision(
                kind=DecisionKind.COMPLETE,
                reason=directive.reason or "approved",
                directive=directive,
                anomaly=scan.anomaly,
            )
        if directive is not None and directive.rejected:
            return RoutingDecision(
                kind=DecisionKind.REJECT,
                reason=directive.reason or "rejected",
                directive=directive,
                anomaly=scan.anomaly,
            )

        if directive is not None and directive.next_role is not None:
            next_role = directive.next_role
            reason = directive.reason or "directive"
        else:
            next_role = self._next_in_order(steps)
            reason = "default order"
            if next_role is None:
                return RoutingDecision(
                    kind=DecisionKind.COMPLETE,
                    reason="all roles completed",
                    anomaly=scan.anomaly,
                )

        executed = sum(1 for step in steps if step.outcome == StepOutcome.SUCCESS)
        if executed >= self.max_steps:
            logger.warning(
                "Step ceiling %d reached before %s could run",
                self.max_steps,
                next_role,
            )
            return RoutingDecision(
                kind=DecisionKind.NOT_CONVERGED,
                role=next_role,
                reason=NOT_CONVERGED_REASON,
                directive=directive,
                anomaly=scan.anomaly,
            )
        return RoutingDecision(
            kind=DecisionKind.RUN,
            role=next_role,
            reason=reason,
            directive=directive,
            anomaly=scan.anomaly,
        )

    def _next_in_order(self, steps: Sequence[StepRecord]) -> str | None:
        done = {step.role for step in steps if step.outcome == StepOutcome.SUCCESS}
        for role in self.roles:
            if role not in done:
                return role
        return None
