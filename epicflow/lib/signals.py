"""
Result signal extraction.

Turns a worker's free-form response into a typed PhaseOutcome. Extractors run
from strict to lenient and the first one that recognizes a status wins:

1. last ```json fenced block
2. last ```result fenced block
3. last bare {...} object carrying a "status" key
4. legacy sentinel lines ("REVIEW PASSED: 2-1-login")
5. case-insensitive fuzzy vocabulary per phase

If nothing matches the outcome is AMBIGUOUS, which callers treat differently
from FAILURE. Legacy mode (--legacy-output) skips the structured extractors.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from epicflow.lib.types import Decision, Finding, Phase, PhaseOutcome, Severity, Signal
from epicflow.lib.validate import is_valid

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({
    "COMPLETE", "COMPLETED", "PASSED", "PASS", "COMPLIANT", "APPROVED",
    "SUCCESS", "DONE", "OK", "GENERATED",
})
FAILURE_STATUSES = frozenset({
    "BLOCKED", "FAILED", "FAIL", "VIOLATIONS", "ERROR", "INCOMPLETE",
    "REJECTED", "PARTIAL",
})
CONCERNS = "CONCERNS"

# Phases where CONCERNS does not block
CONCERNS_PASS_THROUGH = frozenset({Phase.TEST_QUALITY, Phase.TRACEABILITY})

_ALL_SEVERITIES = frozenset(Severity)


@dataclass(frozen=True)
class Vocabulary:
    """Phase-specific signal vocabulary."""
    # (prefix, verbs) pairs, e.g. ("REVIEW", ("PASSED", "FAILED"))
    sentinels: tuple[tuple[str, tuple[str, ...]], ...] = ()
    fuzzy_success: Optional[str] = None
    fuzzy_failure: Optional[str] = None
    # START/END marker block holding legacy findings
    findings_block: Optional[str] = None
    actionable: frozenset = field(default_factory=lambda: _ALL_SEVERITIES)


VOCABULARIES: dict[Phase, Vocabulary] = {
    Phase.DESIGN: Vocabulary(
        sentinels=(("DESIGN", ("COMPLETE",)),),
        fuzzy_success=r"design.*(complete|done|ready)",
    ),
    Phase.TEST_SPEC: Vocabulary(
        sentinels=(("TEST SPEC", ("COMPLETE",)),),
        fuzzy_success=r"test spec.*(complete|generated|done)",
    ),
    Phase.TEST_IMPL: Vocabulary(
        sentinels=(
            ("TEST IMPL", ("COMPLETE",)),
            ("TEST GENERATION", ("COMPLETE", "PARTIAL")),
        ),
        fuzzy_success=r"test.*(generat|creat|impl).*(complete|success|done)",
    ),
    Phase.DEV: Vocabulary(
        sentinels=(("IMPLEMENTATION", ("COMPLETE", "BLOCKED")),),
        fuzzy_success=r"(implementation|dev(elopment)?|story).*(complete|done|finish|success|implement)",
        fuzzy_failure=r"(implementation|dev(elopment)?).*(block|fail|error|cannot|unable|halt)",
    ),
    Phase.REVIEW: Vocabulary(
        sentinels=(("REVIEW", ("PASSED", "FAILED")),),
        fuzzy_success=r"review.*(pass|approv|success|complete|clean|good|lgtm)",
        fuzzy_failure=r"review.*(fail|reject|issue|problem|concern|block)",
        findings_block="REVIEW FINDINGS",
        actionable=frozenset({Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM}),
    ),
    Phase.FIX: Vocabulary(
        sentinels=(("FIX", ("COMPLETE", "INCOMPLETE")),),
        fuzzy_success=r"(fix|repair|resolve).*(complete|done|success|all|finish)",
        fuzzy_failure=r"(fix|repair).*(fail|incomplete|partial|cannot|unable|remain)",
    ),
    Phase.ARCH_COMPLIANCE: Vocabulary(
        sentinels=(("ARCH", ("COMPLIANT", "VIOLATIONS")),),
        fuzzy_success=r"(arch|architecture).*((?<!non-)compliant|pass|conform|valid|ok|good)",
        fuzzy_failure=r"(arch|architecture).*(violation|fail|non-compliant|issue|problem)",
        findings_block="ARCH VIOLATIONS",
        actionable=frozenset({Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM}),
    ),
    Phase.TEST_QUALITY: Vocabulary(
        sentinels=(("TEST QUALITY", ("APPROVED", "CONCERNS", "FAILED")),),
        fuzzy_success=r"test.*quality.*(approv|pass|good|(?<!un)accept|meets)",
        fuzzy_failure=r"test.*quality.*(fail|reject|below|poor|unaccept)",
        findings_block="TEST QUALITY ISSUES",
        actionable=frozenset({Severity.CRITICAL, Severity.HIGH}),
    ),
    Phase.TRACEABILITY: Vocabulary(
        sentinels=(("TRACEABILITY", ("PASS", "CONCERNS", "FAIL")),),
        fuzzy_success=r"trace.*((pass|(?<!in)complete|valid|good|100%)|concerns?)",
        fuzzy_failure=r"trace.*(fail|gap|missing|incomplete)",
        findings_block="TRACEABILITY GAPS",
    ),
    Phase.TRACEABILITY_FIX: Vocabulary(
        sentinels=(("TEST GENERATION", ("COMPLETE", "PARTIAL")),),
        fuzzy_success=r"test.*(generat|creat).*(complete|success|done)",
    ),
    Phase.UAT: Vocabulary(
        sentinels=(("UAT", ("GENERATED",)),),
        fuzzy_success=r"uat.*(generat|creat|complete|success|done)",
    ),
}

_EMPTY_VOCABULARY = Vocabulary()

_SEVERITY_LINE = re.compile(
    r'^\s*(?:[-*]\s*)?\[?(CRITICAL|HIGH|MEDIUM|LOW)\b\]?\s*[:\-]?\s*(.+?)\s*$',
    re.IGNORECASE,
)
_GAP_LINE = re.compile(r'^\s*GAP:\s*(.+)$')
_GAP_PRIORITY = {
    "P0": Severity.CRITICAL,
    "P1": Severity.HIGH,
    "P2": Severity.MEDIUM,
    "P3": Severity.LOW,
}
_BARE_OBJECT = re.compile(r'\{[^{}]*"status"[^{}]*\}')


def classify_status(status: str, phase: Phase) -> Signal:
    """Map a status word to a Signal for the given phase."""
    status = (status or "").strip().upper()
    if status in SUCCESS_STATUSES:
        return Signal.SUCCESS
    if status in FAILURE_STATUSES:
        return Signal.FAILURE
    if status == CONCERNS:
        return Signal.SUCCESS if phase in CONCERNS_PASS_THROUGH else Signal.FAILURE
    return Signal.AMBIGUOUS


def _fenced_blocks(output: str, tag: str) -> list[str]:
    pattern = re.compile(
        r'^[ \t]*```' + re.escape(tag) + r'[^\n]*\n(.*?)^[ \t]*```',
        re.MULTILINE | re.DOTALL,
    )
    return [m.group(1) for m in pattern.finditer(output)]


def extract_block(output: str, start: str, end: str) -> str:
    """Return the body of the last start...end marker block, or ''."""
    pattern = re.compile(
        re.escape(start) + r'[^\n]*\n(.*?)' + re.escape(end),
        re.DOTALL,
    )
    matches = pattern.findall(output)
    return matches[-1].strip() if matches else ""


def parse_finding_lines(text: str) -> list[Finding]:
    """Parse legacy finding lines ("- [HIGH] msg", "GAP: a|b|P0|desc|...")."""
    findings: list[Finding] = []
    for line in text.splitlines():
        if not line.strip():
            continue

        gap = _GAP_LINE.match(line)
        if gap:
            parts = [p.strip() for p in gap.group(1).split("|")]
            story = parts[0] if parts else None
            priority = parts[2].upper() if len(parts) > 2 else ""
            description = " | ".join(p for p in parts[1:] if p) or gap.group(1).strip()
            findings.append(Finding(
                severity=_GAP_PRIORITY.get(priority, Severity.HIGH),
                description=description,
                location=story or None,
            ))
            continue

        match = _SEVERITY_LINE.match(line)
        if match:
            findings.append(Finding(Severity.parse(match.group(1)), match.group(2)))
        elif findings:
            # Continuation (e.g. Given/When/Then under a GAP line)
            prev = findings[-1]
            findings[-1] = Finding(prev.severity, f"{prev.description}\n{line.rstrip()}", prev.location)
    return findings


def _issues_to_findings(issues) -> list[Finding]:
    findings = []
    for issue in issues or []:
        if isinstance(issue, str):
            match = _SEVERITY_LINE.match(issue)
            if match:
                findings.append(Finding(Severity.parse(match.group(1)), match.group(2)))
            elif issue.strip():
                findings.append(Finding(Severity.MEDIUM, issue.strip()))
        elif isinstance(issue, dict):
            description = issue.get("description") or issue.get("issue") or issue.get("message") or ""
            if not description:
                continue
            findings.append(Finding(
                severity=Severity.parse(issue.get("severity")),
                description=str(description),
                location=issue.get("location") or issue.get("file"),
            ))
    return findings


def _decisions(items) -> list[Decision]:
    decisions = []
    for item in items or []:
        if isinstance(item, str):
            decisions.append(Decision(what=item))
        elif isinstance(item, dict) and item.get("what"):
            decisions.append(Decision(what=str(item["what"]), why=str(item.get("why", ""))))
    return decisions


def _int_or_zero(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _actionable(findings: list[Finding], vocab: Vocabulary) -> tuple[Finding, ...]:
    return tuple(f for f in findings if f.severity in vocab.actionable)


def _legacy_findings(output: str, vocab: Vocabulary) -> list[Finding]:
    if not vocab.findings_block:
        return []
    block = extract_block(output, f"{vocab.findings_block} START", f"{vocab.findings_block} END")
    return parse_finding_lines(block)


def _outcome_from_data(data: dict, source: str, output: str, phase: Phase,
                       vocab: Vocabulary) -> Optional[PhaseOutcome]:
    if not isinstance(data, dict) or not is_valid(data, "worker_result"):
        return None
    status = str(data["status"]).strip().upper()
    signal = classify_status(status, phase)
    if signal == Signal.AMBIGUOUS:
        logger.debug(f"Unrecognized status '{status}' in {source} block for {phase.value}")
        return None

    findings: tuple[Finding, ...] = ()
    if signal == Signal.FAILURE:
        found = _issues_to_findings(data.get("issues")) or _legacy_findings(output, vocab)
        findings = _actionable(found, vocab)

    return PhaseOutcome(
        signal=signal,
        status=status,
        source=source,
        summary=str(data.get("summary") or ""),
        story_id=data.get("story_id"),
        findings=findings,
        files_changed=tuple(str(f) for f in data.get("files_changed") or []),
        decisions=tuple(_decisions(data.get("decisions"))),
        concerns=tuple(str(c) for c in data.get("concerns") or []),
        tests_added=_int_or_zero(data.get("tests_added")),
    )


def _from_fenced(tag: str) -> Callable[[str, Phase, Vocabulary], Optional[PhaseOutcome]]:
    def extractor(output: str, phase: Phase, vocab: Vocabulary) -> Optional[PhaseOutcome]:
        for body in reversed(_fenced_blocks(output, tag)):
            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                continue
            outcome = _outcome_from_data(data, tag, output, phase, vocab)
            if outcome is not None:
                return outcome
        return None
    return extractor


def _from_bare_object(output: str, phase: Phase, vocab: Vocabulary) -> Optional[PhaseOutcome]:
    for text in reversed(_BARE_OBJECT.findall(output)):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        outcome = _outcome_from_data(data, "bare", output, phase, vocab)
        if outcome is not None:
            return outcome
    return None


def _from_sentinel(output: str, phase: Phase, vocab: Vocabulary) -> Optional[PhaseOutcome]:
    last = None
    for prefix, verbs in vocab.sentinels:
        pattern = re.compile(
            r'\b' + re.escape(prefix) + r'\s+(' + "|".join(verbs) + r')\b(?:\s*:\s*(\S+))?'
        )
        for match in pattern.finditer(output):
            if last is None or match.start() > last.start():
                last = match
    if last is None:
        return None

    status = last.group(1)
    signal = classify_status(status, phase)
    findings: tuple[Finding, ...] = ()
    if signal == Signal.FAILURE:
        findings = _actionable(_legacy_findings(output, vocab), vocab)
    return PhaseOutcome(
        signal=signal,
        status=status,
        source="sentinel",
        summary=output[last.start():].splitlines()[0].strip(),
        story_id=last.group(2),
        findings=findings,
    )


def _from_fuzzy(output: str, phase: Phase, vocab: Vocabulary) -> Optional[PhaseOutcome]:
    lowered = output.lower()
    if vocab.fuzzy_success and re.search(vocab.fuzzy_success, lowered):
        return PhaseOutcome(signal=Signal.SUCCESS, status="COMPLETE", source="fuzzy")
    if vocab.fuzzy_failure and re.search(vocab.fuzzy_failure, lowered):
        findings = _actionable(_legacy_findings(output, vocab), vocab)
        return PhaseOutcome(signal=Signal.FAILURE, status="FAILED", source="fuzzy", findings=findings)
    return None


STRUCTURED_EXTRACTORS = [
    ("json", _from_fenced("json")),
    ("result", _from_fenced("result")),
    ("bare", _from_bare_object),
]
TEXT_EXTRACTORS = [
    ("sentinel", _from_sentinel),
    ("fuzzy", _from_fuzzy),
]


def extract_outcome(output: str, phase: Phase | str, legacy: bool = False) -> PhaseOutcome:
    """
    Classify raw worker output for a phase.

    Args:
        output: Full worker response text
        phase: Phase (or its name) whose vocabulary applies
        legacy: Skip structured blocks and rely on text signals only

    Returns:
        PhaseOutcome; signal is AMBIGUOUS when no extractor recognized a status
    """
    phase = Phase.parse(phase)
    vocab = VOCABULARIES.get(phase, _EMPTY_VOCABULARY)
    chain = TEXT_EXTRACTORS if legacy else STRUCTURED_EXTRACTORS + TEXT_EXTRACTORS

    for name, extractor in chain:
        outcome = extractor(output or "", phase, vocab)
        if outcome is not None:
            logger.debug(f"{phase.value}: {outcome.signal.value} via {name} ({outcome.status})")
            return outcome

    return PhaseOutcome(signal=Signal.AMBIGUOUS, source="none")
