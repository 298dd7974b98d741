"""
epicflow status - Show checkpoint and metrics for an epic.
"""

from epicflow.lib.config import ProjectLayout
from epicflow.lib.metrics import load_metrics, metrics_path
from epicflow.runner.checkpoint import CheckpointManager
from epicflow.runner.locking import is_locked


def cmd_status(args, layout: ProjectLayout) -> int:
    epic_id = args.epic_id
    checkpoint = CheckpointManager(layout.artifacts_dir).load(epic_id)
    path = metrics_path(layout.metrics_dir, epic_id)
    metrics = load_metrics(path)

    print(f"Epic: {epic_id}")
    print("=" * 60)
    print()
    print(f"Running:        {'yes' if is_locked(layout.artifacts_dir, epic_id) else 'no'}")

    if checkpoint:
        print(f"Checkpoint:     next story index {checkpoint.next_index} "
              f"(last: {checkpoint.last_story_id or 'none'}, saved {checkpoint.timestamp})")
        if checkpoint.exit_code is not None:
            print(f"                interrupted with exit code {checkpoint.exit_code}")
        print(f"                resume with: epicflow run {epic_id} --resume")
    else:
        print("Checkpoint:     none")

    if not metrics:
        print("Metrics:        none")
        return 0

    stories = metrics.get("stories", {})
    fix_loop = metrics.get("fix_loop", {})
    execution = metrics.get("execution", {})
    validation = metrics.get("validation", {})
    print()
    print(f"Stories:        {stories.get('completed', 0)} completed, {stories.get('failed', 0)} failed, "
          f"{stories.get('skipped', 0)} skipped of {stories.get('total', 0)}")
    print(f"Fix attempts:   {fix_loop.get('total_fix_attempts', 0)} "
          f"({fix_loop.get('stories_requiring_fixes', 0)} stories, "
          f"{fix_loop.get('max_retries_hit', 0)} exhausted)")
    print(f"Traceability:   {validation.get('gate_status', 'PENDING')}")
    print(f"Last run:       {execution.get('start_time', '?')} - {execution.get('end_time') or 'in progress'}")

    issues = metrics.get("issues") or []
    if issues:
        print()
        print(f"Issues ({len(issues)}):")
        for issue in issues[-10:]:
            print(f"  - [{issue.get('type')}] {issue.get('story')}: {issue.get('message')}")
    return 0
