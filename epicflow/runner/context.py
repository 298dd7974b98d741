"""
Per-run state and the run directory.

Each run gets artifacts/runs/{timestamp}_epic-{id}/ holding run.log, commands.log,
phases/{story}-{phase}.log with raw worker output, and result.json at the end.
"""

import json
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from epicflow.lib.config import PipelineConfig, ProjectLayout, RunOptions
from epicflow.lib.types import Phase
from epicflow.lib.validate import validate_before_write


@dataclass
class RunState:
    """Counters for one epic run. Replaces shared globals; passed explicitly."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    # Index (in sorted story order) of the last story fully processed
    last_index: int = -1
    last_story_id: str = ""
    current_story: str = ""
    failed_stories: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


@dataclass
class RunContext:
    """Context for a single epic run."""
    run_id: str
    run_dir: Path
    epic_id: str
    layout: ProjectLayout
    config: PipelineConfig
    options: RunOptions
    start_time: datetime = field(default_factory=datetime.now)
    state: RunState = field(default_factory=RunState)
    stages: dict = field(default_factory=dict)

    @classmethod
    def create(cls, layout: ProjectLayout, config: PipelineConfig, options: RunOptions,
               epic_id: str) -> 'RunContext':
        """Create a new run context with fresh run directory."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        run_id = f"{timestamp}_epic-{epic_id}"

        run_dir = layout.artifacts_dir / "runs" / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / "phases").mkdir(exist_ok=True)

        return cls(
            run_id=run_id,
            run_dir=run_dir,
            epic_id=epic_id,
            layout=layout,
            config=config,
            options=options,
        )

    def _append(self, name: str, text: str) -> None:
        with open(self.run_dir / name, "a") as f:
            f.write(f"[{datetime.now().isoformat(timespec='seconds')}] {text}\n")

    def log(self, message: str):
        self._append("run.log", message)

    def log_command(self, cmd: list[str], exit_code: int, duration: float):
        """commands.log: every worker and tooling subprocess with its exit status."""
        self._append("commands.log", f"exit={exit_code} duration={duration:.2f}s\n  $ {shlex.join(cmd)}\n")

    def phase_log(self, story_id: str, phase: Phase | str) -> Path:
        """Path for raw worker output of one phase."""
        name = phase.value if isinstance(phase, Phase) else phase
        return self.run_dir / "phases" / f"{story_id}-{name}.log"

    def record_stage(self, stage: str, status: str, duration: float, notes: str = ""):
        self.stages[stage] = {"status": status, "duration_seconds": duration, "notes": notes}

    def write_result(self, exit_code: int):
        """Write result.json summarizing the run."""
        end_time = datetime.now()
        duration = (end_time - self.start_time).total_seconds()

        result = {
            "version": 1,
            "epic_id": self.epic_id,
            "exit_code": exit_code,
            "dry_run": self.options.dry_run,
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": duration,
            },
            "stories": {
                "total": self.state.total,
                "completed": self.state.completed,
                "failed": self.state.failed,
                "skipped": self.state.skipped,
            },
            "failed_stories": self.state.failed_stories,
            "stages": self.stages,
        }

        path = self.run_dir / "result.json"
        validate_before_write(result, "result", path)
        path.write_text(json.dumps(result, indent=2))
