"""
Retry with exponential backoff for worker invocations.

Only transient failures (rate limits, connection resets, gateway errors) are
retried. Timeouts are reported separately and, by default, not retried since
a second attempt would most likely time out again.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .constants import EXIT_TIMEOUT

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = (
    "rate limit",
    "429",
    "timeout",
    "etimedout",
    "connection",
    "econnrefused",
    "econnreset",
    "temporarily unavailable",
    "503",
    "502",
)


@dataclass
class InvocationResult:
    """Outcome of one (possibly retried) external invocation."""
    output: str
    exit_code: int
    timed_out: bool = False
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @classmethod
    def timeout(cls, seconds: float, partial_output: str = "") -> "InvocationResult":
        message = f"TIMEOUT: worker invocation timed out after {int(seconds)}s"
        output = f"{partial_output}\n{message}" if partial_output else message
        return cls(output=output, exit_code=EXIT_TIMEOUT, timed_out=True)


def is_transient(text: str) -> bool:
    """Check whether failure output looks like a transient error."""
    lowered = (text or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


class RetryController:
    """Runs a call, retrying transient failures with capped exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 5,
        max_delay: float = 60,
        sleep: Callable[[float], None] = time.sleep,
        retry_on_timeout: bool = False,
    ):
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.retry_on_timeout = retry_on_timeout

    def invoke(self, call: Callable[[], InvocationResult]) -> InvocationResult:
        delay = self.initial_delay
        attempt = 0
        while True:
            attempt += 1
            result = call()
            result.attempts = attempt

            if result.ok:
                return result

            if result.timed_out and not self.retry_on_timeout:
                logger.warning(f"Invocation timed out (attempt {attempt}), not retrying")
                return result

            if not result.timed_out and not is_transient(result.output):
                return result

            if attempt >= self.max_attempts:
                logger.warning(f"Transient failure persisted after {attempt} attempts")
                return result

            logger.warning(
                f"Transient failure (exit {result.exit_code}), "
                f"retrying in {delay}s (attempt {attempt + 1}/{self.max_attempts})"
            )
            self.sleep(delay)
            delay = min(delay * 2, self.max_delay)
