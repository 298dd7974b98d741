"""
epicflow run - Execute an epic.
"""

import logging

from epicflow.lib.config import ProjectLayout, RunOptions
from epicflow.lib.constants import EXIT_SETUP_ERROR
from epicflow.runner.stages import SetupError
from epicflow.workflow.engine import execute_epic

logger = logging.getLogger(__name__)

# CLI flags that map one-to-one onto RunOptions fields
OPTION_FLAGS = [name for name in RunOptions.model_fields]


def options_from_args(args) -> RunOptions:
    return RunOptions(**{name: getattr(args, name) for name in OPTION_FLAGS if hasattr(args, name)})


def cmd_run(args, layout: ProjectLayout) -> int:
    """Run every story of an epic. Returns the process exit code."""
    options = options_from_args(args)
    if options.dry_run:
        print("DRY RUN: no worker, tooling or git commands will be executed")

    try:
        return execute_epic(layout.root, args.epic_id, options, use_prefect=not args.no_prefect)
    except SetupError as e:
        print(f"ERROR: {e}")
        return EXIT_SETUP_ERROR
