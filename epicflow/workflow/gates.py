"""
Bounded fix-loop gates.

Every quality gate follows the same pattern: run a check; on failure with
actionable findings, ask the worker to fix them and check again, up to a
ceiling. What happens at the ceiling depends on whether the gate blocks.
Failures without findings pass (fail open).
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Protocol

from epicflow.lib.constants import (
    FIX_FAILED,
    FIX_MAX_RETRIES,
    FIX_SUCCESS,
    ISSUE_ARCH_VIOLATIONS,
    ISSUE_REVIEW_MAX_RETRIES,
    ISSUE_REVIEW_NO_FINDINGS,
    ISSUE_STATIC_ANALYSIS_FAILED,
    ISSUE_STATIC_ANALYSIS_MAX_RETRIES,
    ISSUE_TEST_QUALITY,
    ISSUE_TRACEABILITY_GAPS,
)
from epicflow.lib.types import Finding, FixAttempt, PhaseOutcome

logger = logging.getLogger(__name__)

GATE_PASSED = "passed"
GATE_PASSED_WITHOUT_FINDINGS = "passed_without_findings"
GATE_PASSED_WITH_WARNING = "passed_with_warning"
GATE_FAILED = "failed"


@dataclass(frozen=True)
class GateSpec:
    name: str
    max_attempts: int
    blocking: bool
    # Recorded when a failing check reports no actionable findings
    issue_type: Optional[str]
    # Recorded when the fix ceiling is reached
    exhausted_issue_type: str


@dataclass
class GateResult:
    passed: bool
    status: str
    attempts: int = 0
    findings: list[Finding] = field(default_factory=list)
    warning: str = ""


class GateRecorder(Protocol):
    def record_fix_attempt(self, attempt: FixAttempt) -> None: ...
    def add_issue(self, story_id: str, issue_type: str, message: str) -> None: ...


GATES: dict[str, GateSpec] = {
    "review": GateSpec("review", 3, True, ISSUE_REVIEW_NO_FINDINGS, ISSUE_REVIEW_MAX_RETRIES),
    "arch-compliance": GateSpec("arch-compliance", 2, False, None, ISSUE_ARCH_VIOLATIONS),
    "test-quality": GateSpec("test-quality", 2, False, None, ISSUE_TEST_QUALITY),
    "static-analysis": GateSpec("static-analysis", 3, True, ISSUE_STATIC_ANALYSIS_FAILED,
                                ISSUE_STATIC_ANALYSIS_MAX_RETRIES),
    "traceability": GateSpec("traceability", 3, False, None, ISSUE_TRACEABILITY_GAPS),
}


def gate_spec(name: str, ceilings: Optional[dict[str, int]] = None) -> GateSpec:
    """GATES entry with any configured ceiling override applied."""
    spec = GATES[name]
    if ceilings and name in ceilings:
        spec = replace(spec, max_attempts=max(0, ceilings[name]))
    return spec


def run_gate(
    spec: GateSpec,
    check: Callable[[], PhaseOutcome],
    fix: Callable[[list[Finding], int], bool],
    recorder: GateRecorder,
    story_id: str,
) -> GateResult:
    """
    Run a check with bounded fix attempts.

    Args:
        spec: Gate configuration
        check: Runs the gate's check and classifies the result
        fix: Given findings and the attempt number, asks for a fix; True if
            the fix invocation reported success
        recorder: Receives fix attempts and issues (metrics)
        story_id: Story (or epic scope) the gate runs for

    Returns:
        GateResult; passed is False only for an exhausted blocking gate
    """
    attempt = 0
    while True:
        outcome = check()

        if outcome.success:
            if attempt:
                logger.info(f"{spec.name} passed for {story_id} after {attempt} fix attempt(s)")
            return GateResult(True, GATE_PASSED, attempts=attempt)

        findings = list(outcome.findings)
        if not findings:
            # No actionable feedback to fix from; don't block on it
            logger.warning(f"{spec.name} did not pass for {story_id} but reported no findings; continuing")
            if spec.issue_type:
                recorder.add_issue(story_id, spec.issue_type,
                                   f"{spec.name} returned {outcome.signal.value} without actionable findings")
            return GateResult(True, GATE_PASSED_WITHOUT_FINDINGS, attempts=attempt)

        attempt += 1
        if attempt > spec.max_attempts:
            recorder.record_fix_attempt(FixAttempt(spec.name, story_id, attempt, FIX_MAX_RETRIES))
            message = f"{spec.name} still failing after {spec.max_attempts} fix attempt(s): {len(findings)} finding(s)"
            recorder.add_issue(story_id, spec.exhausted_issue_type, message)
            if spec.blocking:
                logger.error(f"{story_id}: {message}")
                return GateResult(False, GATE_FAILED, attempts=spec.max_attempts, findings=findings)
            logger.warning(f"{story_id}: {message} (non-blocking)")
            return GateResult(True, GATE_PASSED_WITH_WARNING, attempts=spec.max_attempts,
                              findings=findings, warning=message)

        logger.info(f"{spec.name} fix attempt {attempt}/{spec.max_attempts} for {story_id} "
                    f"({len(findings)} finding(s))")
        ok = fix(findings, attempt)
        recorder.record_fix_attempt(
            FixAttempt(spec.name, story_id, attempt, FIX_SUCCESS if ok else FIX_FAILED)
        )
