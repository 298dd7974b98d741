"""
epicflow chain - Execute several epics in order.

Every epic is checked up front: its epic file must exist, its stories are
counted and the epics named under its "## Dependencies" heading are noted.
The plan goes to docs/sprint-artifacts/chain-plan.yaml before anything runs.
Epics then run one after another; after each success a handoff note for the
next epic is written to docs/handoffs/.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import yaml

from epicflow.commands.run import options_from_args
from epicflow.git.status import changed_since, head_sha
from epicflow.lib.config import ProjectLayout, RunOptions
from epicflow.lib.constants import EXIT_INTERRUPTED, EXIT_OK, EXIT_SETUP_ERROR, EXIT_STORY_FAILED, EXIT_TERMINATED
from epicflow.lib.stories import discover_stories, find_epic_file
from epicflow.runner.stages import SetupError
from epicflow.workflow.engine import execute_epic

logger = logging.getLogger(__name__)

_DEPENDENCY_HEADING = re.compile(r'^## Dependencies[ \t]*$', re.MULTILINE)
_DEPENDENCY_REF = re.compile(r'\bEpic\s+(\d+(?:\.\d+)?)\b')
# Lines after the heading searched for epic references
DEPENDENCY_WINDOW = 10

# Changed paths listed in a handoff
HANDOFF_FILE_LIMIT = 20


@dataclass
class ChainEntry:
    epic_id: str
    epic_file: Path
    stories: int
    dependencies: list[str] = field(default_factory=list)


@dataclass
class ChainSummary:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    handoffs: list[Path] = field(default_factory=list)
    combined_uat: Optional[Path] = None
    interrupted: Optional[int] = None

    @property
    def exit_code(self) -> int:
        if self.interrupted is not None:
            return self.interrupted
        return EXIT_STORY_FAILED if self.failed else EXIT_OK


def read_dependencies(epic_file: Path) -> list[str]:
    """Epic ids referenced ("Epic 12") in the lines under a "## Dependencies" heading."""
    text = epic_file.read_text(errors="replace")
    match = _DEPENDENCY_HEADING.search(text)
    if not match:
        return []
    window = text[match.end():].splitlines()[1:DEPENDENCY_WINDOW + 1]
    deps: list[str] = []
    for line in window:
        if line.startswith("## "):
            break
        deps.extend(_DEPENDENCY_REF.findall(line))
    return list(dict.fromkeys(deps))


def analyze_chain(layout: ProjectLayout, epic_ids: list[str]) -> list[ChainEntry]:
    """
    Resolve every epic of the chain.

    Raises:
        SetupError: if an epic file is missing or an epic is listed twice
    """
    if len(set(epic_ids)) != len(epic_ids):
        raise SetupError(f"Epic listed more than once in chain: {' '.join(epic_ids)}")

    entries = []
    for epic_id in epic_ids:
        epic_file = find_epic_file(epic_id, layout.epics_dir)
        if epic_file is None:
            raise SetupError(f"Epic {epic_id}: file not found in {layout.epics_dir}")
        stories = len(discover_stories(epic_id, layout.story_dirs))
        if not stories:
            logger.warning(f"Epic {epic_id}: no story files found yet")
        entry = ChainEntry(epic_id, epic_file, stories, read_dependencies(epic_file))
        for dep in entry.dependencies:
            if dep in epic_ids and epic_ids.index(dep) > epic_ids.index(epic_id):
                logger.warning(f"Epic {epic_id} depends on epic {dep}, which runs later in the chain")
        entries.append(entry)
    return entries


def write_chain_plan(layout: ProjectLayout, entries: list[ChainEntry], options: dict) -> Path:
    plan = {
        "generated": datetime.now().isoformat(timespec="seconds"),
        "epics": [e.epic_id for e in entries],
        "total_epics": len(entries),
        "execution_order": [
            {"epic": e.epic_id, "file": e.epic_file.name, "stories": e.stories, "dependencies": e.dependencies}
            for e in entries
        ],
        "total_stories": sum(e.stories for e in entries),
        "options": options,
    }
    path = layout.chain_plan_path
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write("# Epic chain execution plan\n")
        yaml.safe_dump(plan, f, sort_keys=False, default_flow_style=False)
    return path


def write_handoff(layout: ProjectLayout, entry: ChainEntry, next_epic: str, start_sha: Optional[str]) -> Path:
    """Notes for the next epic: what the finished epic changed and where its documents are."""
    changed = changed_since(layout.root, start_sha) if start_sha else []
    if changed:
        files = "\n".join(f"- `{name}`" for name in changed[:HANDOFF_FILE_LIMIT])
        if len(changed) > HANDOFF_FILE_LIMIT:
            files += f"\n- ... and {len(changed) - HANDOFF_FILE_LIMIT} more"
    else:
        files = "Unable to determine; check the git log."

    layout.handoff_dir.mkdir(parents=True, exist_ok=True)
    path = layout.handoff_dir / f"epic-{entry.epic_id}-to-{next_epic}-handoff.md"
    path.write_text(
        f"# Epic {entry.epic_id} → Epic {next_epic} Handoff\n\n"
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        f"## Epic {entry.epic_id} Completion Summary\n\n"
        f"Epic {entry.epic_id} ({entry.stories} stories) is complete. Key context for epic {next_epic}:\n\n"
        "### Patterns Established\n\n"
        f"- Review the code changed in epic {entry.epic_id} for established patterns\n"
        f"- Story details: `{entry.epic_file.name}` and the `{entry.epic_id}-*` story files\n\n"
        f"### Files Modified\n\n{files}\n\n"
        "### Notes for Next Epic\n\n"
        "- Continue following the patterns established in this epic\n"
        f"- UAT document: `{layout.uat_path(entry.epic_id).relative_to(layout.root)}`\n"
    )
    return path


def write_combined_uat(layout: ProjectLayout, epic_ids: list[str]) -> Path:
    """One UAT checklist spanning the chain, linking each epic's own UAT document."""
    lines = [
        f"# Combined UAT: Epics {' '.join(epic_ids)}",
        "",
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "## Individual Epic UATs",
        "",
    ]
    for epic_id in epic_ids:
        uat = layout.uat_path(epic_id)
        if uat.exists():
            lines += [f"### Epic {epic_id}", "", f"See: [{uat.name}]({uat.name})", ""]
    lines += [
        "## Cross-Epic Integration Testing",
        "",
        "1. [ ] Features from earlier epics still work after later epic changes",
        "2. [ ] Data flows correctly between features from different epics",
        "3. [ ] No regression in previously tested functionality",
        "",
        "## Sign-off",
        "",
        "| Epic | Tester | Date | Status |",
        "|------|--------|------|--------|",
    ]
    lines += [f"| {epic_id} | | | Pending |" for epic_id in epic_ids]

    layout.uat_dir.mkdir(parents=True, exist_ok=True)
    path = layout.uat_dir / f"chain-{'-'.join(epic_ids)}-uat.md"
    path.write_text("\n".join(lines) + "\n")
    return path


def run_chain(
    layout: ProjectLayout,
    entries: list[ChainEntry],
    options: RunOptions,
    start_from: Optional[str] = None,
    handoffs: bool = True,
    combined_uat: bool = True,
    continue_on_failure: bool = False,
    execute: Optional[Callable[[str], int]] = None,
) -> ChainSummary:
    """
    Run the chained epics in order.

    Args:
        execute: Runs one epic and returns its exit code; defaults to
            execute_epic with the given options

    A failed epic stops the chain unless continue_on_failure is set; an
    interrupted epic always stops it.
    """
    if execute is None:
        def execute(epic_id: str) -> int:
            return execute_epic(layout.root, epic_id, options)

    summary = ChainSummary()
    started = start_from is None
    for index, entry in enumerate(entries):
        if not started:
            if entry.epic_id != start_from:
                logger.info(f"Skipping epic {entry.epic_id} (waiting for --start-from {start_from})")
                summary.skipped.append(entry.epic_id)
                continue
            started = True

        print(f"\n=== Epic {entry.epic_id} ({index + 1}/{len(entries)}) ===")
        if options.dry_run:
            print(f"[DRY RUN] Would execute epic {entry.epic_id} ({entry.stories} stories)")
            summary.completed.append(entry.epic_id)
            continue

        start_sha = head_sha(layout.root)
        try:
            code = execute(entry.epic_id)
        except SetupError as e:
            logger.error(f"Epic {entry.epic_id} could not start: {e}")
            code = EXIT_SETUP_ERROR

        if code in (EXIT_INTERRUPTED, EXIT_TERMINATED):
            logger.warning(f"Epic {entry.epic_id} interrupted, stopping chain")
            summary.interrupted = code
            break
        if code != EXIT_OK:
            logger.error(f"Epic {entry.epic_id} failed with exit code {code}")
            summary.failed.append(entry.epic_id)
            if not continue_on_failure:
                logger.error("Chain stopped; rerun with --start-from to continue")
                break
            continue

        summary.completed.append(entry.epic_id)
        if handoffs and index + 1 < len(entries):
            path = write_handoff(layout, entry, entries[index + 1].epic_id, start_sha)
            summary.handoffs.append(path)
            logger.info(f"Handoff for epic {entries[index + 1].epic_id}: {path}")

    if combined_uat and not options.dry_run and len(summary.completed) > 1:
        summary.combined_uat = write_combined_uat(layout, [e.epic_id for e in entries])
    return summary


def print_plan(entries: list[ChainEntry], plan_path: Path) -> None:
    print(f"Chain plan: {plan_path}")
    print(f"  Epics:          {' '.join(e.epic_id for e in entries)}")
    print(f"  Total stories:  {sum(e.stories for e in entries)}")
    print("  Execution order:")
    for index, entry in enumerate(entries, 1):
        deps = f"  (depends on: {', '.join(entry.dependencies)})" if entry.dependencies else ""
        print(f"    {index}. Epic {entry.epic_id} ({entry.stories} stories){deps}")


def cmd_chain(args, layout: ProjectLayout) -> int:
    """Plan and run a chain of epics. Returns the process exit code."""
    epic_ids = list(args.epic_ids)
    if args.start_from_epic and args.start_from_epic not in epic_ids:
        print(f"ERROR: --start-from {args.start_from_epic} is not in the chain")
        return EXIT_SETUP_ERROR

    try:
        entries = analyze_chain(layout, epic_ids)
    except SetupError as e:
        print(f"ERROR: {e}")
        return EXIT_SETUP_ERROR

    options = options_from_args(args)
    plan_path = write_chain_plan(layout, entries, {
        "dry_run": options.dry_run,
        "skip_done": options.skip_done,
        "context_handoff": not args.no_handoff,
        "combined_uat": not args.no_combined_uat,
    })
    print_plan(entries, plan_path)
    if args.analyze_only:
        print(f"\nAnalysis complete. To execute: epicflow chain {' '.join(epic_ids)}")
        return EXIT_OK

    started_at = time.monotonic()
    summary = run_chain(
        layout, entries, options,
        start_from=args.start_from_epic,
        handoffs=not args.no_handoff,
        combined_uat=not args.no_combined_uat,
        continue_on_failure=args.continue_on_failure,
        execute=lambda epic_id: execute_epic(layout.root, epic_id, options, use_prefect=not args.no_prefect),
    )

    print("\n=== EPIC CHAIN COMPLETE ===")
    print(f"  Completed:  {len(summary.completed)}")
    print(f"  Failed:     {len(summary.failed)}")
    print(f"  Skipped:    {len(summary.skipped)}")
    print(f"  Duration:   {time.monotonic() - started_at:.0f}s")
    if summary.combined_uat:
        print(f"  Combined UAT: {summary.combined_uat}")
    return summary.exit_code
