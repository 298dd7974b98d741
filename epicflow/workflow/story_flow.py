"""Per-story stage sequence.

Design -> TestSpec -> TestImpl -> TestVerify -> Dev -> static analysis ->
architecture -> review/fix -> test quality -> regression.

Design and the TDD phases are advisory. Dev is the only hard requirement;
after it the quality gates run through the bounded fix loop, and only an
exhausted blocking gate fails the story.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from epicflow.lib.constants import ISSUE_COMMIT_FAILED, ISSUE_DEV_FAILED, ISSUE_REGRESSION
from epicflow.lib.types import EpicRecord, PhaseOutcome, Story
from epicflow.git import commit_named_files
from epicflow.runner.context import RunContext
from epicflow.runner.impl.phases import PhaseRunner, StoryWork
from epicflow.runner.stages import StageError, StageResult, run_stage, skip_stage
from epicflow.workflow.gates import GateRecorder, GateResult, gate_spec, run_gate

logger = logging.getLogger(__name__)


@dataclass
class StoryResult:
    story_id: str
    passed: bool
    failed_stage: Optional[str] = None
    reason: str = ""
    files_changed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class StoryFlow:
    """Runs the stage sequence for one story."""

    def __init__(self, ctx: RunContext, phases: PhaseRunner, recorder: GateRecorder):
        self.ctx = ctx
        self.phases = phases
        self.recorder = recorder
        self.options = ctx.options

    def _stage(self, work: StoryWork, name: str, fn: Callable[[], None]) -> StageResult:
        return run_stage(self.ctx, f"{work.story.id}:{name}", lambda _ctx: fn())

    def _skip(self, work: StoryWork, name: str, reason: str) -> None:
        skip_stage(self.ctx, f"{work.story.id}:{name}", reason)

    def _advisory(self, work: StoryWork, name: str, warnings: list[str],
                  run: Callable[[StoryWork], PhaseOutcome]) -> None:
        """Run a phase whose failure is logged and never blocks."""
        def fn():
            outcome = run(work)
            if not outcome.success:
                message = f"{name} did not complete cleanly for {work.story.id} - proceeding"
                logger.warning(message)
                warnings.append(message)
        self._stage(work, name, fn)

    def _gate(self, work: StoryWork, name: str, warnings: list[str],
              check: Callable[[StoryWork], PhaseOutcome]) -> None:
        spec = gate_spec(name, self.ctx.config.gate_ceilings)

        def fn():
            result: GateResult = run_gate(
                spec,
                check=lambda: check(work),
                fix=lambda findings, attempt: self.phases.fix(work, name, findings, attempt, spec.max_attempts),
                recorder=self.recorder,
                story_id=work.story.id,
            )
            if result.warning:
                warnings.append(result.warning)
            if not result.passed:
                # run_gate has recorded the exhausted issue already
                raise StageError(name, f"{name} still failing after {result.attempts} fix attempt(s)")
        self._stage(work, name, fn)

    def run(self, story: Story) -> StoryResult:
        """
        Run every enabled stage for a story.

        Returns:
            StoryResult; passed is False when dev failed or a blocking gate
            was exhausted
        """
        work = StoryWork(story)
        warnings: list[str] = []
        opts = self.options
        self.ctx.log(f"Story {story.id}: starting")

        try:
            if opts.skip_review:
                self._dev(work)
            else:
                self._pre_dev(work, warnings)
                self._dev(work)
                self._post_dev(work, warnings)
        except StageError as e:
            logger.error(f"Story {story.id} failed at {e.stage}: {e.message}")
            if e.issue_type:
                self.recorder.add_issue(story.id, e.issue_type, e.message)
            return StoryResult(story.id, False, e.stage, e.message, work.files_changed, warnings)

        return StoryResult(story.id, True, files_changed=work.files_changed, warnings=warnings)

    def _pre_dev(self, work: StoryWork, warnings: list[str]) -> None:
        opts = self.options
        if opts.skip_design:
            self._skip(work, "design", "--skip-design")
        else:
            self._advisory(work, "design", warnings, self.phases.design)

        if opts.skip_tdd:
            self._skip(work, "test-spec", "--skip-tdd")
            return

        if opts.skip_test_spec:
            self._skip(work, "test-spec", "--skip-test-spec")
        else:
            self._advisory(work, "test-spec", warnings, self.phases.test_spec)

        if opts.skip_test_impl:
            self._skip(work, "test-impl", "--skip-test-impl")
            return
        if not (work.test_spec or self.phases.load_test_spec(work)):
            logger.warning(f"No test specification for {work.story.id} - skipping test implementation")
            self._skip(work, "test-impl", "no test specification")
            return

        self._advisory(work, "test-impl", warnings, self.phases.test_impl)
        self._advisory(work, "test-verify", warnings, self.phases.test_verify)

    def _dev(self, work: StoryWork) -> None:
        def fn():
            outcome = self.phases.dev(work)
            if outcome.success:
                return
            reason = outcome.summary or f"dev phase ended {outcome.signal.value}"
            raise StageError("dev", reason, issue_type=ISSUE_DEV_FAILED)
        self._stage(work, "dev", fn)

    def _post_dev(self, work: StoryWork, warnings: list[str]) -> None:
        opts = self.options
        gates = [
            ("static-analysis", opts.skip_static_analysis, "--skip-static-analysis", self.phases.static_analysis),
            ("arch-compliance", opts.skip_arch, "--skip-arch", self.phases.arch_compliance),
            ("review", False, "", self.phases.review),
            ("test-quality", opts.skip_test_quality, "--skip-test-quality", self.phases.test_quality),
        ]
        for name, skipped, flag, check in gates:
            if skipped:
                self._skip(work, name, flag)
                continue
            self._gate(work, name, warnings, check)

        if opts.skip_regression:
            self._skip(work, "regression", "--skip-regression")
            return

        def regression():
            ok, message = self.phases.regression(work)
            self.ctx.log(f"Regression {work.story.id}: {message}")
            if not ok:
                # Never blocks; recorded for investigation
                logger.warning(f"Regression detected in {work.story.id}: {message}")
                self.recorder.add_issue(work.story.id, ISSUE_REGRESSION, message)
                warnings.append(message)
        self._stage(work, "regression", regression)


def commit_story(ctx: RunContext, story_id: str, files: list[str], recorder: GateRecorder) -> bool:
    """
    Commit a completed story's files.

    Returns True when a commit was created. Raises StageError when the
    commit failed so callers (and Prefect retries) can react.
    """
    message = f"feat(epic-{ctx.epic_id}): complete {story_id}"
    return _commit(ctx, story_id, message, files, recorder)


def commit_epic_files(ctx: RunContext, message: str, files: list[str], recorder: GateRecorder) -> bool:
    return _commit(ctx, f"epic-{ctx.epic_id}", message, files, recorder)


def _commit(ctx: RunContext, scope: str, message: str, files: list[str], recorder: GateRecorder) -> bool:
    if ctx.options.no_commit:
        ctx.log(f"Skipping commit for {scope} (--no-commit)")
        return False
    if ctx.options.dry_run:
        ctx.log(f"[DRY RUN] Would commit: {message}")
        return False

    result = commit_named_files(ctx.layout.root, message, files)
    if result.error:
        recorder.add_issue(scope, ISSUE_COMMIT_FAILED, result.error)
        raise StageError("commit", result.error)
    if result.committed:
        ctx.log(f"Committed {scope}: {len(result.staged)} file(s) at {result.sha[:8] or 'unknown'}")
    else:
        logger.warning(f"Nothing to commit for {scope}")
    return result.committed


def run_traceability(ctx: RunContext, phases: PhaseRunner, epic: EpicRecord, recorder: GateRecorder) -> GateResult:
    """Epic-level traceability gate. Each fix generates tests and commits them."""
    spec = gate_spec("traceability", ctx.config.gate_ceilings)
    start = time.time()

    def fix(findings, attempt):
        outcome = phases.traceability_fix(epic, findings, attempt, spec.max_attempts)
        if not outcome.success:
            logger.warning("Test generation incomplete, continuing")
        message = f"test(epic-{epic.id}): generate missing tests for traceability (attempt {attempt})"
        try:
            commit_epic_files(ctx, message, list(outcome.files_changed), recorder)
        except StageError as e:
            logger.warning(f"Could not commit generated tests: {e.message}")
        return outcome.success

    result = run_gate(spec, lambda: phases.traceability(epic), fix, recorder, f"epic-{epic.id}")
    ctx.record_stage("traceability", "passed" if result.passed else "failed", time.time() - start, result.status)
    return result


def run_uat(ctx: RunContext, phases: PhaseRunner, epic: EpicRecord, recorder: GateRecorder) -> PhaseOutcome:
    """Generate the UAT document and commit it."""
    start = time.time()
    outcome = phases.uat(epic)
    if outcome.success:
        ctx.log("UAT document generated")
    else:
        logger.warning("UAT generation may not have completed cleanly")

    uat_path = ctx.layout.uat_path(epic.id)
    if uat_path.exists():
        relative = str(uat_path.relative_to(ctx.layout.root))
        try:
            commit_epic_files(ctx, f"docs(epic-{epic.id}): add UAT document", [relative], recorder)
        except StageError as e:
            logger.warning(f"Could not commit UAT document: {e.message}")
    ctx.record_stage("uat", "passed" if outcome.success else "failed", time.time() - start, outcome.summary)
    return outcome
