#!/usr/bin/env python3
"""epicflow CLI entrypoint."""

import sys
import argparse
import logging
from pathlib import Path

from epicflow.lib.config import ProjectLayout
from epicflow.commands import run as cmd_run_module
from epicflow.commands import status as cmd_status_module
from epicflow.commands import list as cmd_list_module
from epicflow.commands import chain as cmd_chain_module


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def get_layout(args) -> ProjectLayout:
    """Project layout from --project-root (default: current directory)."""
    root = Path(args.project_root or Path.cwd())
    if not root.is_dir():
        print(f"ERROR: Project root not found: {root}")
        sys.exit(2)
    return ProjectLayout.for_root(root)


def cmd_run(args):
    return cmd_run_module.cmd_run(args, get_layout(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_layout(args))


def cmd_list(args):
    return cmd_list_module.cmd_list(args, get_layout(args))


def cmd_chain(args):
    return cmd_chain_module.cmd_chain(args, get_layout(args))


def main():
    parser = argparse.ArgumentParser(prog='epicflow', description='Execute an epic story by story')
    parser.add_argument('--project-root', '-C', help='Project root (default: current directory)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # Also accepted after the subcommand; SUPPRESS keeps an earlier -C from being reset
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--project-root', '-C', default=argparse.SUPPRESS,
                        help='Project root (default: current directory)')

    # epicflow run
    p_run = subparsers.add_parser('run', parents=[common], help='Execute every story of an epic')
    p_run.add_argument('epic_id', help='Epic ID (e.g. 3)')
    p_run.add_argument('--dry-run', action='store_true', help='Show what would run without invoking anything')
    p_run.add_argument('--skip-review', action='store_true', help='Run only the dev phase for each story')
    p_run.add_argument('--no-commit', action='store_true', help='Do not commit after each story')
    p_run.add_argument('--parallel', action='store_true', help='Accepted for compatibility; stories run sequentially')
    p_run.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    p_run.add_argument('--start-from', metavar='STORY_ID', help='Skip stories until one whose id contains this')
    p_run.add_argument('--skip-done', action='store_true', help='Skip stories whose Status is done')
    p_run.add_argument('--resume', action='store_true', help='Resume from the last checkpoint')
    p_run.add_argument('--skip-arch', action='store_true', help='Skip architecture compliance')
    p_run.add_argument('--skip-test-quality', action='store_true', help='Skip test quality review')
    p_run.add_argument('--skip-traceability', action='store_true', help='Skip epic traceability check')
    p_run.add_argument('--skip-static-analysis', action='store_true', help='Skip static analysis gate')
    p_run.add_argument('--skip-design', action='store_true', help='Skip the design phase')
    p_run.add_argument('--skip-regression', action='store_true', help='Skip the regression gate')
    p_run.add_argument('--skip-tdd', action='store_true', help='Skip test spec and test implementation')
    p_run.add_argument('--skip-test-spec', action='store_true', help='Skip test specification')
    p_run.add_argument('--skip-test-impl', action='store_true', help='Skip test implementation')
    p_run.add_argument('--legacy-output', action='store_true', help='Ignore JSON result blocks; use text signals only')
    p_run.add_argument('--no-prefect', action='store_true', help='Run without the Prefect flow wrapper')
    p_run.set_defaults(func=cmd_run)

    # epicflow status
    p_status = subparsers.add_parser('status', parents=[common], help='Show checkpoint and metrics for an epic')
    p_status.add_argument('epic_id', help='Epic ID')
    p_status.set_defaults(func=cmd_status)

    # epicflow list
    p_list = subparsers.add_parser('list', parents=[common], help='List the stories of an epic')
    p_list.add_argument('epic_id', help='Epic ID')
    p_list.set_defaults(func=cmd_list)

    # epicflow chain
    p_chain = subparsers.add_parser('chain', parents=[common], help='Execute several epics in order')
    p_chain.add_argument('epic_ids', nargs='+', metavar='EPIC_ID', help='Epic IDs in execution order')
    p_chain.add_argument('--dry-run', action='store_true', help='Write the plan and show what would run')
    p_chain.add_argument('--analyze-only', action='store_true', help='Write the chain plan and stop')
    p_chain.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    p_chain.add_argument('--start-from', dest='start_from_epic', metavar='EPIC_ID',
                         help='Skip earlier epics of the chain')
    p_chain.add_argument('--skip-done', action='store_true', help='Skip stories whose Status is done')
    p_chain.add_argument('--no-commit', action='store_true', help='Do not commit after each story')
    p_chain.add_argument('--no-handoff', action='store_true', help='Do not write handoff notes between epics')
    p_chain.add_argument('--no-combined-uat', action='store_true', help='Do not write the combined UAT document')
    p_chain.add_argument('--continue-on-failure', action='store_true',
                         help='Run the remaining epics after one fails')
    p_chain.add_argument('--no-prefect', action='store_true', help='Run without the Prefect flow wrapper')
    p_chain.set_defaults(func=cmd_chain)

    args = parser.parse_args()
    setup_logging(getattr(args, 'verbose', False))
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
