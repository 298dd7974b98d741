"""
Epic metrics record.

One YAML file per epic under the sprint artifacts metrics directory. The
record is validated against schemas/metrics.schema.json before every write.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from epicflow.lib.constants import FIX_MAX_RETRIES
from epicflow.lib.types import FixAttempt
from epicflow.lib.validate import validate_before_write

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def metrics_path(metrics_dir: Path, epic_id: str) -> Path:
    return metrics_dir / f"epic-{epic_id}-metrics.yaml"


def empty_record(epic_id: str, total: int = 0) -> dict:
    return {
        "epic_id": epic_id,
        "execution": {"start_time": _now(), "end_time": "", "duration_seconds": 0},
        "stories": {"total": total, "completed": 0, "failed": 0, "skipped": 0},
        "fix_loop": {"total_fix_attempts": 0, "stories_requiring_fixes": 0, "max_retries_hit": 0},
        "validation": {"gate_executed": False, "gate_status": "PENDING"},
        "issues": [],
        "story_details": [],
    }


def load_metrics(path: Path) -> Optional[dict]:
    """Read a metrics file, or None if missing or unreadable."""
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


class MetricsRecorder:
    """Accumulates epic metrics and persists them after each change."""

    def __init__(self, path: Path, epic_id: str, total: int = 0, persist: bool = True):
        self.path = path
        self.persist = persist
        self.record = empty_record(epic_id, total)
        self._start = datetime.now()
        self._stories_fixed: set[str] = set()
        self.fix_attempts: list[FixAttempt] = []

    def save(self) -> None:
        validate_before_write(self.record, "metrics", self.path)
        if not self.persist:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(yaml.safe_dump(self.record, sort_keys=False, default_flow_style=False))

    def add_issue(self, story_id: str, issue_type: str, message: str) -> None:
        self.record["issues"].append({
            "story": story_id,
            "type": issue_type,
            "message": message,
            "timestamp": _now(),
        })
        logger.debug(f"Metrics issue [{issue_type}] {story_id}: {message}")
        self.save()

    def record_fix_attempt(self, attempt: FixAttempt) -> None:
        """Append a fix attempt; exhaustion markers count toward max_retries_hit."""
        attempt.timestamp = attempt.timestamp or _now()
        self.fix_attempts.append(attempt)
        fix_loop = self.record["fix_loop"]

        if attempt.outcome == FIX_MAX_RETRIES:
            fix_loop["max_retries_hit"] += 1
        else:
            fix_loop["total_fix_attempts"] += 1
            if attempt.story_id not in self._stories_fixed:
                self._stories_fixed.add(attempt.story_id)
                fix_loop["stories_requiring_fixes"] += 1

        self.record["story_details"].append({
            "story": attempt.story_id,
            "gate": attempt.gate,
            "fix_attempt": attempt.attempt,
            "outcome": attempt.outcome,
            "timestamp": attempt.timestamp,
        })
        self.save()

    def set_counts(self, total: int, completed: int, failed: int, skipped: int) -> None:
        self.record["stories"].update(
            total=total, completed=completed, failed=failed, skipped=skipped,
        )
        self.save()

    def set_validation(self, status: str) -> None:
        self.record["validation"] = {"gate_executed": status != "SKIPPED", "gate_status": status}
        self.save()

    def finalize(self) -> None:
        end = datetime.now()
        self.record["execution"]["end_time"] = end.isoformat(timespec="seconds")
        self.record["execution"]["duration_seconds"] = int((end - self._start).total_seconds())
        self.save()
