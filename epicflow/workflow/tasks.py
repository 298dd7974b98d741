"""Prefect task wrappers for the epic steps.

Wraps story execution, commits and the epic-level phases with @task so a
Prefect-backed run gets per-step state, logging and (for commits) retries.
The underlying step functions remain plain Python and are used directly by
EpicRunner when Prefect is not wanted.
"""

from typing import TYPE_CHECKING

from prefect import task

from epicflow.workflow.story_flow import commit_story, run_traceability, run_uat

if TYPE_CHECKING:
    from epicflow.lib.types import EpicRecord, Story
    from epicflow.runner.context import RunContext
    from epicflow.runner.impl.phases import PhaseRunner
    from epicflow.workflow.gates import GateRecorder
    from epicflow.workflow.story_flow import StoryFlow


@task(
    name="story",
    description="Run every enabled phase and gate for one story"
)
def task_run_story(flow: "StoryFlow", story: "Story"):
    """Story execution. No retries: phases already retry transient worker errors."""
    return flow.run(story)


@task(
    retries=1,
    retry_delay_seconds=5,
    name="commit",
    description="Commit the files of a completed story"
)
def task_commit_story(ctx: "RunContext", story_id: str, files: list[str], recorder: "GateRecorder"):
    """Commit with a single retry for transient git failures (index.lock, hooks)."""
    return commit_story(ctx, story_id, files, recorder)


@task(
    name="traceability",
    description="Epic-level requirements traceability with test generation"
)
def task_traceability(ctx: "RunContext", phases: "PhaseRunner", epic: "EpicRecord", recorder: "GateRecorder"):
    return run_traceability(ctx, phases, epic, recorder)


@task(
    retries=1,
    retry_delay_seconds=30,
    name="uat",
    description="Generate the epic's UAT document"
)
def task_uat(ctx: "RunContext", phases: "PhaseRunner", epic: "EpicRecord", recorder: "GateRecorder"):
    """Single retry with a longer delay for worker rate limits."""
    return run_uat(ctx, phases, epic, recorder)
