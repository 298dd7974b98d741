"""
Cumulative decision log for an epic.

Append-only markdown that carries design choices and implementation
decisions from one phase (and story) to the next. It is prompt context only;
nothing reads it for control flow.
"""

import logging
import re
from datetime import datetime
from pathlib import Path

from epicflow.lib.constants import DECISION_LOG_CONTEXT_LIMIT
from epicflow.lib.prompt_budget import tail_bytes
from epicflow.lib.types import Decision, Phase

logger = logging.getLogger(__name__)


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class DecisionLog:
    def __init__(self, artifacts_dir: Path, epic_id: str, enabled: bool = True):
        self.path = artifacts_dir / f"epic-{epic_id}-decisions.md"
        self.epic_id = epic_id
        self.enabled = enabled

    def init(self) -> None:
        """Create the log with its header unless it already exists."""
        if not self.enabled:
            return
        if self.path.exists():
            logger.info(f"Using existing decision log: {self.path}")
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            f"# Epic {self.epic_id} Decision Log\n\n"
            "This file tracks implementation decisions for context continuity across phases.\n\n"
            f"**Epic:** {self.epic_id}\n"
            f"**Started:** {_stamp()}\n\n"
            "---\n"
        )

    def append(self, phase: Phase | str, story_id: str, content: str) -> None:
        if not self.enabled or not content.strip():
            return
        if not self.path.exists():
            self.init()
        label = phase.log_name if isinstance(phase, Phase) else str(phase)
        with open(self.path, "a") as f:
            f.write(
                f"\n## {label}: {story_id}\n"
                f"**Timestamp:** {_stamp()}\n\n"
                f"{content.strip()}\n\n"
                "---\n"
            )

    def append_decisions(self, phase: Phase, story_id: str, decisions: tuple[Decision, ...]) -> None:
        lines = [f"- {d.what}" + (f" ({d.why})" if d.why else "") for d in decisions]
        if lines:
            self.append(phase, story_id, "\n".join(lines))

    def context(self, limit: int = DECISION_LOG_CONTEXT_LIMIT) -> str:
        """Most recent part of the log, capped for prompt inclusion."""
        if not self.path.exists():
            return ""
        return tail_bytes(self.path.read_text(), limit)

    def story_entries(self, story_id: str) -> str:
        """All entries recorded for one story."""
        if not self.path.exists():
            return ""
        sections = re.split(r'(?m)^(?=## )', self.path.read_text())
        heading = re.compile(rf'## [^:\n]+: {re.escape(story_id)}\s*$')
        return "".join(s for s in sections if s and heading.match(s.splitlines()[0]))
