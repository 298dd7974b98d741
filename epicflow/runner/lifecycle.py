"""
Epic session lifecycle.

SIGINT and SIGTERM become SystemExit(130/143) so that the normal unwinding
path runs. On any abnormal exit the session finalizes metrics, warns about
uncommitted work and saves a checkpoint pointing at the next story.
"""

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Optional

from epicflow.git import has_uncommitted_changes
from epicflow.lib.constants import EXIT_INTERRUPTED, EXIT_OK, EXIT_STORY_FAILED, EXIT_TERMINATED
from epicflow.lib.metrics import MetricsRecorder
from epicflow.runner.checkpoint import Checkpoint, CheckpointManager
from epicflow.runner.context import RunContext

logger = logging.getLogger(__name__)


def checkpoint_from_state(ctx: RunContext) -> Checkpoint:
    state = ctx.state
    return Checkpoint(
        epic_id=ctx.epic_id,
        last_index=state.last_index,
        last_story_id=state.last_story_id,
        completed=state.completed,
        failed=state.failed,
        skipped=state.skipped,
    )


def _exit_code(e: SystemExit) -> int:
    if e.code is None:
        return EXIT_OK
    return e.code if isinstance(e.code, int) else EXIT_STORY_FAILED


def cleanup_after_abort(ctx: RunContext, checkpoints: CheckpointManager,
                        metrics: Optional[MetricsRecorder], exit_code: int) -> None:
    """Persist what is known about an interrupted run."""
    state = ctx.state
    ctx.log(f"Run aborted with exit code {exit_code} during {state.current_story or 'setup'}")
    logger.warning(f"Epic {ctx.epic_id} interrupted (exit {exit_code})")

    if metrics is not None:
        metrics.set_counts(state.total, state.completed, state.failed, state.skipped)
        metrics.finalize()

    if not ctx.options.dry_run:
        if has_uncommitted_changes(ctx.layout.root):
            print("WARNING: uncommitted changes remain in the working tree")
            print(f"  Review with: git -C {ctx.layout.root} status")
        path = checkpoints.save(checkpoint_from_state(ctx), exit_code=exit_code)
        print(f"Checkpoint saved: {path}")
        print(f"  Resume with: epicflow run {ctx.epic_id} --resume")

    ctx.write_result(exit_code)


@contextmanager
def epic_session(ctx: RunContext, checkpoints: CheckpointManager,
                 metrics: Optional[MetricsRecorder] = None):
    """
    Wrap a whole epic run.

    Signal handlers are only installed from the main thread; they are
    restored on exit.
    """
    originals = {}
    if threading.current_thread() is threading.main_thread():
        originals[signal.SIGTERM] = signal.signal(signal.SIGTERM, lambda *_: sys.exit(EXIT_TERMINATED))
        originals[signal.SIGINT] = signal.signal(signal.SIGINT, lambda *_: sys.exit(EXIT_INTERRUPTED))

    exit_code = EXIT_OK
    try:
        yield
    except SystemExit as e:
        exit_code = _exit_code(e)
        raise
    except KeyboardInterrupt:
        exit_code = EXIT_INTERRUPTED
        raise
    except Exception:
        exit_code = EXIT_STORY_FAILED
        raise
    finally:
        for signum, handler in originals.items():
            signal.signal(signum, handler)
        if exit_code != EXIT_OK:
            cleanup_after_abort(ctx, checkpoints, metrics, exit_code)
