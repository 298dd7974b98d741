"""
Prompt size budgeting.

Prompts are assembled from a base template plus prioritized context blocks.
Blocks are added in priority order while they fit; critical and high priority
blocks that don't fit are truncated, lower priorities are dropped. A prompt
whose base alone is too large goes to an overflow file and the worker gets a
short pointer prompt instead.
"""

import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Optional

from .constants import DEFAULT_MAX_PROMPT_SIZE, DEFAULT_PROMPT_RESERVE

logger = logging.getLogger(__name__)

# Critical blocks keep at least this much even when the budget is spent
MIN_CRITICAL_BYTES = 1024

TRUNCATION_NOTE = "\n\n... [CONTENT TRUNCATED - {total}B total, showing first {shown}B] ..."


class Priority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


@dataclass
class ContentBlock:
    label: str
    priority: Priority
    content: str

    @property
    def size(self) -> int:
        return byte_size(self.content)


@dataclass
class AssembledPrompt:
    text: str
    size_bytes: int
    included: list[str] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    overflow_path: Optional[Path] = None


def byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def _cut(data: bytes, limit: int) -> str:
    # errors="ignore" drops a trailing partial multi-byte sequence
    return data[:max(0, limit)].decode("utf-8", errors="ignore")


def _note_size(total: int, limit: int) -> int:
    return byte_size(TRUNCATION_NOTE.format(total=total, shown=limit))


def truncate_bytes(text: str, limit: int, label: str = "") -> str:
    """
    Truncate text to at most limit bytes, including a truncation note.

    Returns text unchanged if it already fits.
    """
    data = text.encode("utf-8")
    total = len(data)
    if total <= limit:
        return text

    shown = limit - _note_size(total, limit)
    if shown <= 0:
        return _cut(data, limit)

    head = _cut(data, shown)
    if label:
        logger.debug(f"Truncated {label}: {total}B -> {byte_size(head)}B")
    return head + TRUNCATION_NOTE.format(total=total, shown=byte_size(head))


def tail_bytes(text: str, limit: int) -> str:
    """Keep the last limit bytes of text."""
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    tail = data[len(data) - limit:]
    # Skip continuation bytes left over from a split character
    return tail.decode("utf-8", errors="ignore")


class PromptBudget:
    """Assembles prompts under a byte ceiling."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_PROMPT_SIZE,
        reserve_bytes: int = DEFAULT_PROMPT_RESERVE,
        overflow_dir: Optional[Path] = None,
    ):
        self.max_bytes = max_bytes
        self.reserve_bytes = reserve_bytes
        self.overflow_dir = overflow_dir

    @property
    def available(self) -> int:
        return self.max_bytes - self.reserve_bytes

    def assemble(self, base: str, blocks: list[ContentBlock], label: str = "prompt") -> AssembledPrompt:
        """
        Build a prompt from base text plus context blocks.

        Args:
            base: Template text that is always included
            blocks: Context blocks; order within a priority is preserved
            label: Name used for logs and overflow file naming

        Returns:
            AssembledPrompt with included/truncated/dropped block labels
        """
        result = AssembledPrompt(text="", size_bytes=0)
        parts = [base]
        remaining = self.available - byte_size(base)

        # sorted() is stable, so equal priorities keep caller order
        for block in sorted(blocks, key=lambda b: b.priority):
            if not block.content:
                continue
            section = f"\n\n{block.content}"
            size = byte_size(section)

            if size <= remaining:
                parts.append(section)
                remaining -= size
                result.included.append(block.label)
            # A high block stays only if its truncation note fits with some content left
            elif block.priority == Priority.CRITICAL or (
                    block.priority == Priority.HIGH and remaining - 2 > _note_size(block.size, remaining - 2)):
                # Critical content is never dropped; the overflow path catches any excess
                limit = remaining - 2
                if block.priority == Priority.CRITICAL:
                    limit = max(limit, MIN_CRITICAL_BYTES)
                parts.append("\n\n" + truncate_bytes(block.content, limit, block.label))
                remaining = 0
                result.truncated.append(block.label)
                logger.warning(f"{label}: truncated {block.label} ({size}B) to fit budget")
            else:
                result.dropped.append(block.label)
                logger.warning(f"{label}: dropped {block.label} ({size}B, {block.priority.name})")

        text = "".join(parts)
        size = byte_size(text)
        if size > self.available:
            return self._overflow(text, label, result)

        result.text = text
        result.size_bytes = size
        return result

    def _overflow(self, text: str, label: str, result: AssembledPrompt) -> AssembledPrompt:
        overflow_dir = Path(self.overflow_dir or tempfile.gettempdir())
        overflow_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        safe_label = "".join(c if c.isalnum() or c in "-_." else "-" for c in label)
        path = overflow_dir / f"prompt-{safe_label}-{timestamp}.md"
        path.write_text(text)

        logger.warning(f"{label}: prompt is {byte_size(text)}B, over budget; wrote {path}")
        pointer = (
            "The full instructions for this task exceeded the prompt size limit and were saved to a file.\n\n"
            f"Read the complete instructions from: {path}\n\n"
            "Follow those instructions exactly, including the required output format."
        )
        result.text = truncate_bytes(pointer, self.max_bytes)
        result.size_bytes = byte_size(result.text)
        result.overflow_path = path
        return result
