"""Story lifecycle state machine using the transitions library.

Story status only moves forward: pending -> in-progress -> done | blocked.
A blocked story can be picked up again by a later run through the explicit
retry trigger; nothing inside a run retries automatically.

Usage:
    from epicflow.workflow.fsm import StoryFSM

    fsm = StoryFSM(story)
    fsm.start()      # pending -> in-progress, writes "Status: in-progress"
    fsm.complete()   # in-progress -> done
"""

import logging
from typing import Callable

from transitions import Machine

from epicflow.lib.constants import STORY_BLOCKED, STORY_DONE, STORY_IN_PROGRESS, STORY_PENDING
from epicflow.lib.stories import read_story_status, update_story_status
from epicflow.lib.types import Story

logger = logging.getLogger(__name__)


STATES = [STORY_PENDING, STORY_IN_PROGRESS, STORY_DONE, STORY_BLOCKED]

# Each trigger becomes a method on the FSM
TRANSITIONS = [
    {"trigger": "start", "source": STORY_PENDING, "dest": STORY_IN_PROGRESS},
    {"trigger": "complete", "source": STORY_IN_PROGRESS, "dest": STORY_DONE},
    {"trigger": "block", "source": STORY_IN_PROGRESS, "dest": STORY_BLOCKED},
    {"trigger": "retry", "source": STORY_BLOCKED, "dest": STORY_IN_PROGRESS},
]

# Document statuses that map onto FSM states
_STATUS_ALIASES = {
    "": STORY_PENDING,
    "draft": STORY_PENDING,
    "ready": STORY_PENDING,
    "ready-for-dev": STORY_PENDING,
    "todo": STORY_PENDING,
    "backlog": STORY_PENDING,
    "in progress": STORY_IN_PROGRESS,
    "review": STORY_IN_PROGRESS,
    "complete": STORY_DONE,
    "completed": STORY_DONE,
}


def normalize_status(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    if value in STATES:
        return value
    return _STATUS_ALIASES.get(value, STORY_PENDING)


class StoryFSM:
    """State machine for one story.

    Loads the initial state from the story document and persists every
    transition back to its Status: line.
    """

    def __init__(self, story: Story, persist: bool = True,
                 on_transition: Callable[[str, str, str], None] | None = None):
        self.story = story
        self.persist = persist
        self.on_transition = on_transition

        initial = normalize_status(read_story_status(story.path) if story.path.exists() else story.status)

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )
        story.status = self.state

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.story.id}: {from_state} -> {to_state} ({trigger})")
        self.story.status = to_state
        if self.persist and self.story.path.exists():
            update_story_status(self.story.path, to_state)

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def begin(self) -> None:
        """Enter in-progress from pending (start) or blocked (retry)."""
        if self.state == STORY_BLOCKED:
            self.retry()
        elif self.state == STORY_PENDING:
            self.start()

    def can(self, trigger: str) -> bool:
        return trigger in self.machine.get_triggers(self.state)

    def mark_done(self) -> bool:
        """Complete the story if it is in progress. A re-run of a done story stays done."""
        if self.can("complete"):
            self.complete()
            return True
        return False

    def mark_blocked(self) -> bool:
        if self.can("block"):
            self.block()
            return True
        return False
