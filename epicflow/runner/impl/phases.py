"""
Phase implementations for epicflow.

Worker phases render their template, add context through the prompt budget,
invoke the worker and classify the response into a PhaseOutcome. Internal
phases (test-verify, static-analysis, regression) run project tooling instead.
Nothing here decides what happens next; the story flow does.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from epicflow.lib.decision_log import DecisionLog
from epicflow.lib.prompt_budget import ContentBlock, Priority, PromptBudget
from epicflow.lib.prompts import build_section, render_prompt
from epicflow.lib.retry import InvocationResult
from epicflow.lib.signals import extract_block, extract_outcome
from epicflow.lib.tooling import ProjectTooling, RegressionTracker
from epicflow.lib.types import EpicRecord, Finding, Phase, PhaseOutcome, Severity, Story
from epicflow.runner.context import RunContext

logger = logging.getLogger(__name__)

ARCHITECTURE_DOCS = ("docs/architecture.md", "docs/ARCHITECTURE.md", "ARCHITECTURE.md", "docs/architecture")


class Worker(Protocol):
    def run(self, prompt: str, phase: Phase, timeout: Optional[int] = None,
            log_file: Optional[Path] = None) -> InvocationResult: ...


@dataclass
class StoryWork:
    """What earlier phases of one story produced for later ones."""
    story: Story
    design: str = ""
    test_spec: str = ""
    test_spec_path: Optional[Path] = None
    files_changed: list[str] = field(default_factory=list)

    def add_files(self, files) -> None:
        for f in files:
            if f not in self.files_changed:
                self.files_changed.append(f)


def _read(path: Optional[Path]) -> str:
    if not path or not path.exists():
        return ""
    try:
        return path.read_text()
    except OSError as e:
        logger.warning(f"Could not read {path}: {e}")
        return ""


class PhaseRunner:
    """Runs individual phases for one epic run."""

    def __init__(
        self,
        ctx: RunContext,
        worker: Worker,
        tooling: ProjectTooling,
        decision_log: DecisionLog,
        budget: Optional[PromptBudget] = None,
        regression_tracker: Optional[RegressionTracker] = None,
    ):
        self.ctx = ctx
        self.worker = worker
        self.tooling = tooling
        self.decision_log = decision_log
        self.budget = budget or PromptBudget(
            ctx.config.max_prompt_size,
            ctx.config.prompt_reserve,
            overflow_dir=ctx.run_dir / "prompts",
        )
        self.regression_tracker = regression_tracker or RegressionTracker()

    # --- invocation ---

    def _invoke(self, phase: Phase, scope_id: str, base: str, blocks: list[ContentBlock],
                log_name: Optional[str] = None) -> tuple[PhaseOutcome, str]:
        """Assemble, invoke and classify. Returns the outcome and raw output."""
        label = f"{scope_id}-{log_name or phase.value}"
        assembled = self.budget.assemble(base, blocks, label=label)
        if assembled.truncated or assembled.dropped or assembled.overflow_path:
            self.ctx.log(
                f"Prompt {label}: {assembled.size_bytes}B, truncated={assembled.truncated} "
                f"dropped={assembled.dropped} overflow={assembled.overflow_path}"
            )

        log_file = self.ctx.phase_log(scope_id, log_name or phase)
        result = self.worker.run(assembled.text, phase, log_file=log_file)

        if result.timed_out:
            self.ctx.log(f"{phase.value} for {scope_id} timed out")
            return PhaseOutcome.failure(result.output.strip().splitlines()[-1], source="timeout"), result.output

        outcome = extract_outcome(result.output, phase, legacy=self.ctx.options.legacy_output)
        if not result.ok and outcome.ambiguous:
            summary = f"worker exited with code {result.exit_code} after {result.attempts} attempt(s)"
            outcome = PhaseOutcome.failure(summary, source="exit-code")

        self.ctx.log(
            f"{phase.value} {scope_id}: {outcome.signal.value} "
            f"({outcome.status or 'no status'} via {outcome.source})"
        )
        return outcome, result.output

    # --- context blocks ---

    def _story_block(self, story: Story, priority: Priority = Priority.CRITICAL) -> ContentBlock:
        return ContentBlock("story", priority, build_section(_read(story.path), "## Story Document"))

    def _decision_block(self, priority: Priority = Priority.MEDIUM) -> ContentBlock:
        return ContentBlock(
            "decision-log", priority,
            build_section(self.decision_log.context(), "## Decision Log (previous phases and stories)"),
        )

    def _work_blocks(self, work: StoryWork) -> list[ContentBlock]:
        return [
            ContentBlock("design", Priority.HIGH, build_section(work.design, "## Technical Design")),
            ContentBlock("test-spec", Priority.HIGH, build_section(work.test_spec, "## Test Specification")),
        ]

    def _story_vars(self, story: Story) -> dict:
        return {"story_id": story.id, "story_file": str(story.path)}

    def _record_decisions(self, phase: Phase, story_id: str, outcome: PhaseOutcome) -> None:
        if outcome.decisions:
            self.decision_log.append_decisions(phase, story_id, outcome.decisions)

    def architecture_doc(self) -> str:
        root = self.ctx.layout.root
        for name in ARCHITECTURE_DOCS:
            if (root / name).exists():
                return str(root / name)
        return "none found; infer conventions from the existing code"

    # --- story phases ---

    def design(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(Phase.DESIGN, project_root=str(self.ctx.layout.root), **self._story_vars(story))
        outcome, output = self._invoke(
            Phase.DESIGN, story.id, base,
            [self._story_block(story), self._decision_block()],
        )
        design = extract_block(output, "DESIGN START", "DESIGN END")
        if design:
            work.design = design
            self.decision_log.append(Phase.DESIGN, story.id, design)
        self._record_decisions(Phase.DESIGN, story.id, outcome)
        return outcome

    def test_spec_path(self, story: Story) -> Path:
        return self.ctx.layout.test_specs_dir / f"{story.id}-test-spec.md"

    def test_spec(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        path = self.test_spec_path(story)
        base = render_prompt(Phase.TEST_SPEC, test_spec_path=str(path), **self._story_vars(story))
        outcome, output = self._invoke(
            Phase.TEST_SPEC, story.id, base,
            [self._story_block(story), self._work_blocks(work)[0], self._decision_block(Priority.LOW)],
        )

        spec = extract_block(output, "TEST SPEC START", "TEST SPEC END")
        if spec and not self.ctx.options.dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(spec + "\n")
            self.decision_log.append(Phase.TEST_SPEC, story.id, spec)
        self.load_test_spec(work)
        return outcome

    def load_test_spec(self, work: StoryWork) -> bool:
        """Pick up a specification from this run or a previous one."""
        path = self.test_spec_path(work.story)
        if path.exists():
            work.test_spec = _read(path)
            work.test_spec_path = path
        return bool(work.test_spec)

    def test_impl(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(
            Phase.TEST_IMPL, test_spec_path=str(work.test_spec_path or ""), **self._story_vars(story),
        )
        blocks = [
            ContentBlock("test-spec", Priority.CRITICAL, build_section(work.test_spec, "## Test Specification")),
            self._story_block(story, Priority.HIGH),
        ]
        outcome, _ = self._invoke(Phase.TEST_IMPL, story.id, base, blocks)
        work.add_files(outcome.files_changed)
        return outcome

    def test_verify(self, work: StoryWork) -> PhaseOutcome:
        result = self.tooling.verify_red_tests()
        if result.passed:
            return PhaseOutcome.passed("Tests compile; failures expected before implementation")
        finding = Finding(Severity.HIGH, f"New tests do not compile:\n{result.output}")
        return PhaseOutcome.failure("compile errors in new tests", [finding])

    def dev(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(Phase.DEV, project_root=str(self.ctx.layout.root), **self._story_vars(story))
        blocks = [self._story_block(story), *self._work_blocks(work), self._decision_block()]
        outcome, _ = self._invoke(Phase.DEV, story.id, base, blocks)
        work.add_files(outcome.files_changed)
        self._record_decisions(Phase.DEV, story.id, outcome)
        return outcome

    def static_analysis(self, work: StoryWork) -> PhaseOutcome:
        report = self.tooling.run_static_analysis()
        if report.passed:
            return PhaseOutcome.passed(f"{len(report.results)} check(s) passed")
        checks = ", ".join(report.failed_checks)
        finding = Finding(Severity.HIGH, f"New failures in {checks}:\n{report.failure_excerpt}")
        return PhaseOutcome.failure(f"static analysis failed: {checks}", [finding])

    def arch_compliance(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(
            Phase.ARCH_COMPLIANCE, architecture_doc=self.architecture_doc(), **self._story_vars(story),
        )
        outcome, _ = self._invoke(
            Phase.ARCH_COMPLIANCE, story.id, base,
            [self._story_block(story, Priority.HIGH), self._work_blocks(work)[0]],
        )
        return outcome

    def review(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(Phase.REVIEW, **self._story_vars(story))
        changed = "\n".join(f"- {f}" for f in work.files_changed)
        blocks = [
            self._story_block(story),
            ContentBlock("files-changed", Priority.HIGH, build_section(changed, "## Files Reported Changed")),
            self._work_blocks(work)[0],
        ]
        outcome, _ = self._invoke(Phase.REVIEW, story.id, base, blocks)
        return outcome

    def test_quality(self, work: StoryWork) -> PhaseOutcome:
        story = work.story
        base = render_prompt(Phase.TEST_QUALITY, **self._story_vars(story))
        blocks = [self._story_block(story, Priority.HIGH), self._work_blocks(work)[1]]
        outcome, _ = self._invoke(Phase.TEST_QUALITY, story.id, base, blocks)
        if outcome.concerns:
            self.decision_log.append("TEST_QUALITY_CONCERNS", story.id,
                                     "\n".join(f"- {c}" for c in outcome.concerns))
        return outcome

    def fix(self, work: StoryWork, gate: str, findings: list[Finding], attempt: int, max_attempts: int) -> bool:
        """One fix attempt for a gate. True if the worker reported the fix complete."""
        story = work.story
        base = render_prompt(
            Phase.FIX, gate=gate, attempt=attempt, max_attempts=max_attempts, **self._story_vars(story),
        )
        listing = "\n".join(f.format() for f in findings)
        blocks = [
            ContentBlock("findings", Priority.CRITICAL, build_section(listing, f"## {gate} Findings")),
            self._story_block(story, Priority.HIGH),
            self._decision_block(Priority.LOW),
        ]
        outcome, _ = self._invoke(Phase.FIX, story.id, base, blocks, log_name=f"fix-{gate}-{attempt}")
        work.add_files(outcome.files_changed)
        if not outcome.success:
            logger.warning(f"{gate} fix attempt {attempt} for {story.id} did not complete: {outcome.summary}")
        return outcome.success

    def regression(self, work: StoryWork) -> tuple[bool, str]:
        result = self.tooling.run_tests()
        if result is None:
            return True, "No test command for this project"
        return self.regression_tracker.check(result.output)

    # --- epic phases ---

    def _stories_listing(self, epic: EpicRecord) -> str:
        return "\n".join(f"- {s.id}: {s.path}" for s in epic.stories)

    def _epic_blocks(self, epic: EpicRecord) -> list[ContentBlock]:
        blocks = [ContentBlock("epic", Priority.CRITICAL, build_section(_read(epic.epic_file), "## Epic Document"))]
        for story in epic.stories:
            blocks.append(ContentBlock(
                f"story-{story.id}", Priority.MEDIUM,
                build_section(_read(story.path), f"## Story {story.id}"),
            ))
        return blocks

    def traceability(self, epic: EpicRecord) -> PhaseOutcome:
        base = render_prompt(
            Phase.TRACEABILITY,
            epic_id=epic.id,
            stories=self._stories_listing(epic),
            story_count=len(epic.stories),
            traceability_path=str(self.ctx.layout.traceability_path(epic.id)),
        )
        outcome, _ = self._invoke(Phase.TRACEABILITY, f"epic-{epic.id}", base, self._epic_blocks(epic))
        if outcome.concerns:
            self.decision_log.append(Phase.TRACEABILITY, f"epic-{epic.id}",
                                     "\n".join(f"- {c}" for c in outcome.concerns))
        return outcome

    def traceability_fix(self, epic: EpicRecord, findings: list[Finding], attempt: int,
                         max_attempts: int) -> PhaseOutcome:
        base = render_prompt(Phase.TRACEABILITY_FIX, epic_id=epic.id, attempt=attempt, max_attempts=max_attempts)
        listing = "\n".join(f.format() for f in findings)
        blocks = [
            ContentBlock("gaps", Priority.CRITICAL, build_section(listing, "## Coverage Gaps")),
            *self._epic_blocks(epic)[1:],
        ]
        outcome, _ = self._invoke(
            Phase.TRACEABILITY_FIX, f"epic-{epic.id}", base, blocks, log_name=f"traceability-fix-{attempt}",
        )
        return outcome

    def uat(self, epic: EpicRecord) -> PhaseOutcome:
        base = render_prompt(
            Phase.UAT,
            epic_id=epic.id,
            stories=self._stories_listing(epic),
            uat_path=str(self.ctx.layout.uat_path(epic.id)),
        )
        outcome, _ = self._invoke(Phase.UAT, f"epic-{epic.id}", base, self._epic_blocks(epic))
        return outcome
