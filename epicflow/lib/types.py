"""
Shared data types for epicflow.

This module contains dataclasses and enums used across multiple modules to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class Phase(Enum):
    """A named pipeline step. Phases parameterize invocations; they hold no state."""
    DESIGN = "design"
    TEST_SPEC = "test-spec"
    TEST_IMPL = "test-impl"
    TEST_VERIFY = "test-verify"
    DEV = "dev"
    STATIC_ANALYSIS = "static-analysis"
    ARCH_COMPLIANCE = "arch-compliance"
    REVIEW = "review"
    FIX = "fix"
    TEST_QUALITY = "test-quality"
    REGRESSION = "regression"
    TRACEABILITY = "traceability"
    TRACEABILITY_FIX = "traceability-fix"
    UAT = "uat"

    @property
    def log_name(self) -> str:
        """Upper-case label used in decision log headings (e.g. TEST_SPEC)."""
        return self.value.replace("-", "_").upper()

    @classmethod
    def parse(cls, value: "Phase | str") -> "Phase":
        if isinstance(value, Phase):
            return value
        return cls(value.replace("_", "-").lower())


class Signal(Enum):
    """Tagged classification of a worker response."""
    SUCCESS = "success"
    FAILURE = "failure"
    AMBIGUOUS = "ambiguous"


class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @classmethod
    def parse(cls, value: str | None) -> "Severity":
        """Parse a severity string, defaulting to MEDIUM for unknown values."""
        if not value:
            return cls.MEDIUM
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.MEDIUM


@dataclass(frozen=True)
class Finding:
    """A single actionable issue reported by a check."""
    severity: Severity
    description: str
    location: Optional[str] = None

    def format(self) -> str:
        loc = f" ({self.location})" if self.location else ""
        return f"- [{self.severity.value}] {self.description}{loc}"


@dataclass(frozen=True)
class Decision:
    """An implementation decision reported by the worker."""
    what: str
    why: str = ""


@dataclass(frozen=True)
class PhaseOutcome:
    """Typed result of one worker invocation. Produced once, never mutated."""
    signal: Signal
    status: str = ""
    source: str = "none"  # which extractor matched: json, result, bare, sentinel, fuzzy, none
    summary: str = ""
    story_id: Optional[str] = None
    findings: tuple[Finding, ...] = ()
    files_changed: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    concerns: tuple[str, ...] = ()
    tests_added: int = 0

    @property
    def success(self) -> bool:
        return self.signal == Signal.SUCCESS

    @property
    def failed(self) -> bool:
        return self.signal == Signal.FAILURE

    @property
    def ambiguous(self) -> bool:
        return self.signal == Signal.AMBIGUOUS

    @classmethod
    def passed(cls, summary: str = "", source: str = "internal") -> "PhaseOutcome":
        return cls(signal=Signal.SUCCESS, status="PASSED", source=source, summary=summary)

    @classmethod
    def failure(cls, summary: str, findings: list[Finding] | None = None,
                source: str = "internal") -> "PhaseOutcome":
        return cls(
            signal=Signal.FAILURE,
            status="FAILED",
            source=source,
            summary=summary,
            findings=tuple(findings or ()),
        )


@dataclass
class Story:
    """A unit of implementation work discovered from a story document."""
    id: str
    path: Path
    status: str = "pending"

    @property
    def title(self) -> str:
        """First markdown heading of the document, or the id."""
        try:
            for line in self.path.read_text().splitlines():
                if line.startswith("#"):
                    return line.lstrip("#").strip()
        except OSError:
            pass
        return self.id


@dataclass
class FixAttempt:
    """Append-only record of one fix invocation (or the exhaustion marker)."""
    gate: str
    story_id: str
    attempt: int
    outcome: str  # "success", "failed", "max_retries"
    timestamp: str = ""


@dataclass
class EpicRecord:
    """Epic being executed: identity, source document and ordered stories."""
    id: str
    epic_file: Optional[Path]
    stories: list[Story] = field(default_factory=list)
