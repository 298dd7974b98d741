"""
Checkpoint persistence for resumable epic runs.

A checkpoint is a KEY=value file in the sprint artifacts directory recording
the last fully processed story and the run counters. It is read with the safe
env parser, never sourced.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from epicflow.lib import envparse
from epicflow.lib.constants import CHECKPOINT_MAX_AGE_DAYS
from epicflow.lib.validate import validate_before_write

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    epic_id: str
    last_index: int = -1
    last_story_id: str = ""
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    timestamp: str = ""
    exit_code: Optional[int] = None

    @property
    def next_index(self) -> int:
        return self.last_index + 1

    def to_env(self) -> dict[str, str]:
        values = {
            "EPIC_ID": self.epic_id,
            "LAST_STORY_INDEX": str(self.last_index),
            "NEXT_STORY_INDEX": str(self.next_index),
            "LAST_STORY_ID": self.last_story_id,
            "COMPLETED": str(self.completed),
            "FAILED": str(self.failed),
            "SKIPPED": str(self.skipped),
            "TIMESTAMP": self.timestamp or datetime.now().isoformat(timespec="seconds"),
        }
        if self.exit_code is not None:
            values["EXIT_CODE"] = str(self.exit_code)
        return values

    @classmethod
    def from_env(cls, epic_id: str, values: dict[str, str]) -> "Checkpoint":
        exit_code = values.get("EXIT_CODE")
        return cls(
            epic_id=values.get("EPIC_ID") or epic_id,
            last_index=int(values["LAST_STORY_INDEX"]),
            last_story_id=values.get("LAST_STORY_ID", ""),
            completed=int(values.get("COMPLETED") or 0),
            failed=int(values.get("FAILED") or 0),
            skipped=int(values.get("SKIPPED") or 0),
            timestamp=values.get("TIMESTAMP", ""),
            exit_code=int(exit_code) if exit_code else None,
        )


class CheckpointManager:
    """Loads, saves and clears per-epic checkpoints."""

    def __init__(self, artifacts_dir: Path, max_age: timedelta = timedelta(days=CHECKPOINT_MAX_AGE_DAYS)):
        self.artifacts_dir = Path(artifacts_dir)
        self.max_age = max_age

    def path_for(self, epic_id: str) -> Path:
        return self.artifacts_dir / f".epic-{epic_id}-checkpoint"

    def load(self, epic_id: str) -> Optional[Checkpoint]:
        """
        Load the checkpoint for an epic.

        Returns None when there is no checkpoint, when it is older than max_age
        (the stale file is removed), or when it cannot be parsed.
        """
        path = self.path_for(epic_id)
        if not path.exists():
            return None

        age = time.time() - path.stat().st_mtime
        if age > self.max_age.total_seconds():
            logger.warning(f"Checkpoint for epic {epic_id} is {age / 86400:.1f} days old, discarding")
            path.unlink(missing_ok=True)
            return None

        try:
            values = envparse.load_env(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Invalid checkpoint {path}: {e}")
            return None

        if "LAST_STORY_INDEX" not in values:
            logger.warning(f"Invalid checkpoint {path}: missing LAST_STORY_INDEX")
            return None

        try:
            return Checkpoint.from_env(epic_id, values)
        except ValueError as e:
            logger.warning(f"Invalid checkpoint {path}: {e}")
            return None

    def save(self, checkpoint: Checkpoint, exit_code: Optional[int] = None) -> Path:
        if exit_code is not None:
            checkpoint.exit_code = exit_code
        checkpoint.timestamp = datetime.now().isoformat(timespec="seconds")

        path = self.path_for(checkpoint.epic_id)
        values = checkpoint.to_env()
        validate_before_write(values, "checkpoint", path)
        envparse.write_env(path, values, header=f"epicflow checkpoint for epic {checkpoint.epic_id}")
        logger.debug(f"Checkpoint saved: next story index {checkpoint.next_index}")
        return path

    def clear(self, epic_id: str) -> None:
        path = self.path_for(epic_id)
        if path.exists():
            path.unlink()
            logger.info(f"Cleared checkpoint for epic {epic_id}")
