"""Epic execution engine.

EpicRunner walks the epic's stories in order, drives each through the story
flow and the story lifecycle FSM, commits and checkpoints after every story,
then runs the epic-level traceability gate and UAT generation.

The same sequence runs either as plain Python (tests, --no-prefect) or inside
the Prefect flow `epic_execute`, where each step is a Prefect task.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from prefect import flow

from epicflow.agents.worker import DryRunWorker, GenerationWorker
from epicflow.git import check_branch_protection, is_git_repo
from epicflow.lib.agents_config import INTERNAL_PHASES, load_agents_config, validate_stage_binaries
from epicflow.lib.config import ProjectLayout, RunOptions, load_pipeline_config
from epicflow.lib.constants import (
    EPIC_ID_PATTERN,
    EXIT_OK,
    EXIT_STORY_FAILED,
    STORY_DONE,
)
from epicflow.lib.decision_log import DecisionLog
from epicflow.lib.metrics import MetricsRecorder, metrics_path
from epicflow.lib.retry import RetryController
from epicflow.lib.stories import SprintStatus, discover_stories, find_epic_file
from epicflow.lib.tooling import ProjectTooling, RegressionTracker
from epicflow.lib.types import EpicRecord, Phase, Story
from epicflow.runner.checkpoint import CheckpointManager
from epicflow.runner.context import RunContext
from epicflow.runner.impl.phases import PhaseRunner, Worker
from epicflow.runner.lifecycle import checkpoint_from_state, epic_session
from epicflow.runner.locking import LockTimeout, epic_lock
from epicflow.runner.stages import SetupError, StageError
from epicflow.workflow.fsm import StoryFSM
from epicflow.workflow.gates import (
    GATE_FAILED,
    GATE_PASSED,
    GATE_PASSED_WITH_WARNING,
    GATE_PASSED_WITHOUT_FINDINGS,
)
from epicflow.workflow.story_flow import StoryFlow, StoryResult, commit_story, run_traceability, run_uat
from epicflow.workflow.tasks import task_commit_story, task_run_story, task_traceability, task_uat

logger = logging.getLogger(__name__)

# Traceability gate status -> metrics validation status
VALIDATION_STATUS = {
    GATE_PASSED: "PASSED",
    GATE_PASSED_WITHOUT_FINDINGS: "CONCERNS",
    GATE_PASSED_WITH_WARNING: "CONCERNS",
    GATE_FAILED: "FAILED",
}


@dataclass
class StepFunctions:
    """The four externally visible steps of an epic run."""
    run_story: Callable[[StoryFlow, Story], StoryResult]
    commit_story: Callable
    traceability: Callable
    uat: Callable


PLAIN_STEPS = StepFunctions(
    run_story=lambda story_flow, story: story_flow.run(story),
    commit_story=commit_story,
    traceability=run_traceability,
    uat=run_uat,
)

PREFECT_STEPS = StepFunctions(
    run_story=task_run_story,
    commit_story=task_commit_story,
    traceability=task_traceability,
    uat=task_uat,
)


@dataclass
class EpicSummary:
    epic_id: str
    total: int
    completed: int
    failed: int
    skipped: int
    exit_code: int
    duration_seconds: float = 0.0
    failed_stories: list[str] = field(default_factory=list)


class EpicRunner:
    """Sequential story loop with checkpointing."""

    def __init__(
        self,
        ctx: RunContext,
        epic: EpicRecord,
        phases: PhaseRunner,
        metrics: MetricsRecorder,
        checkpoints: CheckpointManager,
        sprint_status: Optional[SprintStatus] = None,
        steps: StepFunctions = PLAIN_STEPS,
    ):
        self.ctx = ctx
        self.epic = epic
        self.phases = phases
        self.metrics = metrics
        self.checkpoints = checkpoints
        self.sprint_status = sprint_status
        self.steps = steps
        self.story_flow = StoryFlow(ctx, phases, metrics)
        self.options = ctx.options

    # --- bookkeeping ---

    def _save_progress(self) -> None:
        state = self.ctx.state
        self.metrics.set_counts(state.total, state.completed, state.failed, state.skipped)
        if not self.options.dry_run:
            self.checkpoints.save(checkpoint_from_state(self.ctx))

    def _advance(self, index: int, story: Story) -> None:
        state = self.ctx.state
        state.last_index = index
        state.last_story_id = story.id
        state.current_story = ""
        self._save_progress()

    def _skip(self, index: int, story: Story, reason: str) -> None:
        logger.warning(f"Skipping {story.id} ({reason})")
        self.ctx.log(f"Skipped {story.id}: {reason}")
        self.ctx.state.skipped += 1
        self._advance(index, story)

    def _resume_index(self) -> int:
        """Seed counters from the checkpoint; index of the first story to run."""
        if not self.options.resume:
            return 0
        checkpoint = self.checkpoints.load(self.epic.id)
        if checkpoint is None:
            print("No valid checkpoint found; starting from the first story")
            return 0

        state = self.ctx.state
        state.completed = checkpoint.completed
        state.failed = checkpoint.failed
        state.skipped = checkpoint.skipped
        state.last_index = checkpoint.last_index
        state.last_story_id = checkpoint.last_story_id
        print(f"Resuming epic {self.epic.id} at story index {checkpoint.next_index} "
              f"(after {checkpoint.last_story_id or 'none'})")
        self.ctx.log(f"Resumed from checkpoint: next index {checkpoint.next_index}")
        return checkpoint.next_index

    # --- story processing ---

    def _process(self, index: int, story: Story, fsm: StoryFSM) -> None:
        state = self.ctx.state
        state.current_story = story.id

        print()
        print("=" * 60)
        print(f"Story {index + 1}/{state.total}: {story.id}")
        print("=" * 60)

        fsm.begin()
        result = self.steps.run_story(self.story_flow, story)
        state.warnings.extend(result.warnings)

        if not result.passed:
            fsm.mark_blocked()
            state.failed += 1
            state.failed_stories.append(story.id)
            print(f"FAILED: {story.id} at {result.failed_stage}: {result.reason}")
            self._advance(index, story)
            return

        fsm.mark_done()
        if self.sprint_status is not None and not self.options.dry_run:
            self.sprint_status.update(story.id, STORY_DONE)

        try:
            self.steps.commit_story(self.ctx, story.id, result.files_changed, self.metrics)
        except StageError as e:
            # A completed story stays completed; the issue is in the metrics
            logger.warning(f"Commit failed for {story.id}: {e.message}")
            state.warnings.append(f"commit failed for {story.id}")

        state.completed += 1
        print(f"Story complete: {story.id} ({state.completed}/{state.total})")
        self._advance(index, story)

    def _epic_phases(self) -> None:
        if self.options.skip_traceability:
            self.metrics.set_validation("SKIPPED")
        else:
            print()
            print("Requirements traceability check")
            result = self.steps.traceability(self.ctx, self.phases, self.epic, self.metrics)
            self.metrics.set_validation(VALIDATION_STATUS.get(result.status, "CONCERNS"))

        print()
        print("Generating UAT document")
        self.steps.uat(self.ctx, self.phases, self.epic, self.metrics)

    def run(self, steps: Optional[StepFunctions] = None) -> EpicSummary:
        if steps is not None:
            self.steps = steps
        start = time.time()
        state = self.ctx.state
        stories = self.epic.stories
        state.total = len(stories)
        opts = self.options

        if opts.parallel:
            logger.warning("--parallel is not supported; stories run sequentially")

        first = self._resume_index()
        started = not opts.start_from
        self.ctx.log(f"Executing {len(stories)} stories from index {first}")

        for index, story in enumerate(stories):
            if index < first:
                continue

            if not started:
                if opts.start_from in story.id:
                    started = True
                else:
                    self._skip(index, story, f"waiting for {opts.start_from}")
                    continue

            fsm = StoryFSM(story, persist=not opts.dry_run)
            if opts.skip_done and fsm.state == STORY_DONE:
                self._skip(index, story, "Status: done")
                continue

            self._process(index, story, fsm)

        self._epic_phases()

        exit_code = EXIT_STORY_FAILED if state.failed else EXIT_OK
        self.metrics.set_counts(state.total, state.completed, state.failed, state.skipped)
        self.metrics.finalize()
        if exit_code == EXIT_OK and not opts.dry_run:
            self.checkpoints.clear(self.epic.id)
        self.ctx.write_result(exit_code)

        return EpicSummary(
            epic_id=self.epic.id,
            total=state.total,
            completed=state.completed,
            failed=state.failed,
            skipped=state.skipped,
            exit_code=exit_code,
            duration_seconds=time.time() - start,
            failed_stories=list(state.failed_stories),
        )


@flow(name="epic_execute")
def epic_execute(runner: EpicRunner) -> EpicSummary:
    """Run the epic with each step as a Prefect task."""
    runner.ctx.log(f"Starting Prefect flow for epic {runner.epic.id}: {runner.ctx.run_id}")
    return runner.run(steps=PREFECT_STEPS)


# --- setup ---

def load_epic(layout: ProjectLayout, epic_id: str) -> EpicRecord:
    """Discover the epic's stories. Raises SetupError when there are none."""
    if not EPIC_ID_PATTERN.match(epic_id):
        raise SetupError(f"Invalid epic id '{epic_id}'")

    epic_file = find_epic_file(epic_id, layout.epics_dir)
    if epic_file is None:
        logger.warning(f"Epic file not found for epic {epic_id} in {layout.epics_dir}")

    stories = discover_stories(epic_id, layout.story_dirs)
    if not stories:
        searched = ", ".join(str(d) for d in layout.story_dirs)
        raise SetupError(f"No stories found for epic {epic_id} (searched {searched})")
    return EpicRecord(id=epic_id, epic_file=epic_file, stories=stories)


def _preflight(layout: ProjectLayout, options: RunOptions, protected: list[str]) -> None:
    if options.dry_run:
        return

    agents = load_agents_config(layout.root)
    worker_phases = [p.value for p in Phase if p not in INTERNAL_PHASES]
    check = validate_stage_binaries(agents, worker_phases)
    if not check.ok:
        raise SetupError(check.error_message)

    if options.no_commit:
        return
    if not is_git_repo(layout.root):
        raise SetupError(f"{layout.root} is not a git repository (use --no-commit to run without commits)")
    branch = check_branch_protection(layout.root, protected)
    if not branch.ok:
        raise SetupError(branch.message)


def print_summary(summary: EpicSummary, ctx: RunContext) -> None:
    layout = ctx.layout
    print()
    print("=" * 60)
    print("EPIC EXECUTION COMPLETE")
    print("=" * 60)
    print()
    print(f"  Epic:       {summary.epic_id}")
    print(f"  Duration:   {int(summary.duration_seconds)}s")
    print(f"  Stories:    {summary.total}")
    print(f"  Skipped:    {summary.skipped}")
    print(f"  Completed:  {summary.completed}")
    print(f"  Failed:     {summary.failed}")
    if summary.failed_stories:
        print(f"  Failed stories: {', '.join(summary.failed_stories)}")
    print()
    print("  Deliverables:")
    print(f"    - UAT:           {layout.uat_path(summary.epic_id)}")
    print(f"    - Traceability:  {layout.traceability_path(summary.epic_id)}")
    print(f"    - Metrics:       {metrics_path(layout.metrics_dir, summary.epic_id)}")
    print(f"    - Run log:       {ctx.run_dir / 'run.log'}")


def execute_epic(
    project_root: Path,
    epic_id: str,
    options: RunOptions,
    use_prefect: bool = True,
    worker: Optional[Worker] = None,
) -> int:
    """
    Set up and run an epic.

    Returns:
        Process exit code (0 all stories passed, 1 a story failed)

    Raises:
        SetupError: if the run cannot start
    """
    root = Path(project_root)
    if not root.is_dir():
        raise SetupError(f"Project root not found: {root}")

    layout = ProjectLayout.for_root(root)
    config = load_pipeline_config(layout.root)
    epic = load_epic(layout, epic_id)
    _preflight(layout, options, config.protected_branches)

    try:
        with epic_lock(layout.artifacts_dir, epic_id):
            ctx = RunContext.create(layout, config, options, epic_id)
            ctx.log(f"Epic {epic_id}: {len(epic.stories)} stories, epic file {epic.epic_file}")
            print(f"Epic {epic_id}: {len(epic.stories)} stories")
            print(f"Run directory: {ctx.run_dir}")

            metrics = MetricsRecorder(
                metrics_path(layout.metrics_dir, epic_id), epic_id,
                total=len(epic.stories), persist=not options.dry_run,
            )
            metrics.save()
            checkpoints = CheckpointManager(layout.artifacts_dir, timedelta(days=config.checkpoint_max_age_days))
            decision_log = DecisionLog(layout.artifacts_dir, epic_id, enabled=not options.dry_run)
            decision_log.init()

            tooling = ProjectTooling(
                layout.root,
                timeout=config.tool_timeout,
                max_output=config.max_test_failure_size,
                dry_run=options.dry_run,
                on_command=ctx.log_command,
            )
            if not (options.skip_static_analysis and options.skip_regression):
                tooling.capture_baseline()

            if worker is None:
                if options.dry_run:
                    worker = DryRunWorker()
                else:
                    retry = RetryController(
                        max_attempts=config.retry_max_attempts,
                        initial_delay=config.retry_initial_delay,
                        max_delay=config.retry_max_delay,
                    )
                    worker = GenerationWorker(
                        layout.root, load_agents_config(layout.root), retry,
                        timeout=config.worker_timeout, on_command=ctx.log_command,
                    )

            phases = PhaseRunner(
                ctx, worker, tooling, decision_log,
                regression_tracker=RegressionTracker(tooling.passing_baseline),
            )
            runner = EpicRunner(ctx, epic, phases, metrics, checkpoints, SprintStatus.locate(layout))

            with epic_session(ctx, checkpoints, metrics):
                summary = epic_execute(runner) if use_prefect else runner.run()

            print_summary(summary, ctx)
            return summary.exit_code
    except LockTimeout as e:
        raise SetupError(str(e)) from e
