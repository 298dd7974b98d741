"""
Per-story stages.

A stage wraps one step of a story (design, dev, a gate) so its duration and
outcome land in the run context. Any failure surfaces as StageError, which the
story flow turns into a failed StoryResult.
"""

import time
from enum import Enum
from typing import Callable, Optional

from epicflow.runner.context import RunContext


class StageResult(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageError(Exception):
    """A story stage failed; issue_type names the metrics issue it maps to, if any."""

    def __init__(self, stage: str, message: str, issue_type: Optional[str] = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message
        self.issue_type = issue_type


class SetupError(Exception):
    """Fatal pre-flight error; the epic does not start."""


def skip_stage(ctx: RunContext, stage_name: str, reason: str) -> StageResult:
    ctx.record_stage(stage_name, StageResult.SKIPPED.value, 0.0, reason)
    ctx.log(f"{stage_name}: skipped ({reason})")
    return StageResult.SKIPPED


def run_stage(ctx: RunContext, stage_name: str, stage_fn: Callable[[RunContext], None]) -> StageResult:
    """
    Run stage_fn(ctx) and record how it went.

    Raises:
        StageError: the stage's own error, or any other exception wrapped
            with this stage's name
    """
    ctx.log(f"{stage_name}: started")
    started = time.monotonic()
    try:
        stage_fn(ctx)
    except StageError as e:
        error = e
    except Exception as e:
        error = StageError(stage_name, str(e))
        error.__cause__ = e
    else:
        elapsed = time.monotonic() - started
        ctx.record_stage(stage_name, StageResult.PASSED.value, elapsed)
        ctx.log(f"{stage_name}: passed in {elapsed:.2f}s")
        return StageResult.PASSED

    ctx.record_stage(stage_name, StageResult.FAILED.value, time.monotonic() - started, error.message)
    ctx.log(f"{stage_name}: failed: {error.message}")
    raise error
